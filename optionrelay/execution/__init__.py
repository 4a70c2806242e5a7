"""
Relay package.

Owns the order lifecycle: accept signed bundles, list open orders, prepare
settlement calldata for takers and record terminal outcomes.
"""
