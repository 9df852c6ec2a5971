"""
Caching package: per-subject permission caches and the keyed registry
the group and user managers are built on.
"""
