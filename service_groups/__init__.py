"""
Groups engine package.

Resolves the effective permissions of users and groups, taking node
expiration, group membership and group weight into account. It provides:

- app.nodes: Permission node model and the typed group/prefix/weight keys.
- app.cache: Per-subject permission cache and the generic registry.
- app.subjects: Group and user models and the user manager.
- app.groups: Group registry, best-group resolution and group writes.
- app.pipeline: Mutate, persist, invalidate; one writer per subject.
- app.persistence: Storage contract with memory and PostgreSQL backends.

Guidelines:
- The in-memory registries are authoritative for reads within a process.
- Every write persists before dependent caches are invalidated.
"""
