"""
Price inputs for valuation: an HTTP price source and the cache-first resolver.
"""
