"""
Subjects package.

- models: Group and User, each owning one permission cache.
- users: UserManager, the registry of loaded users.
"""
