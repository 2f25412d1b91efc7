# ==== API ROUTES PACKAGE ==== #

"""
API routes package for the discount engine.

Contains the discount application endpoints; health probes and the
metrics scrape endpoint are registered directly by the app factory.
"""
