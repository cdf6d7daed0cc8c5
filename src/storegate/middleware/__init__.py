"""
Request authentication and store-context enforcement.
"""
