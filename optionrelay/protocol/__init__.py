"""
Wire-level protocol helpers.

Everything in this package is pure and synchronous: bitfields, EIP-712 hashing,
signature codecs, salts and ABI payloads. Field widths and orders here are a
hard compatibility contract with the settlement contracts.
"""
