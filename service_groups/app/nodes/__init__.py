"""
Permission node model.

Nodes are classified once, at construction, into group, prefix, weight or
generic nodes; callers read the decoded payload instead of parsing keys.
"""
