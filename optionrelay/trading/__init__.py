"""
Maker-side order construction (intents, option terms, wallets, builder).
"""
