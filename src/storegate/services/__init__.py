"""
Business services of the identity core.
"""
