"""
Groups engine application package.
"""
