"""
Planbridge
Blueprint registry.
"""
