"""Origin adapters.

Origins supply values on a cache miss. They are slow and untrusted from the
coordinator's point of view: their latency bounds the population lock TTL.
"""
