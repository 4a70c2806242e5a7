"""
optionrelay package

Off-chain order encoding, signing and relay for options granted through a
limit-order settlement contract. Makers sign an order plus option terms; the
relay stores the bundle and hands takers the exact calldata to settle it.
"""

__version__ = "0.1.0"
