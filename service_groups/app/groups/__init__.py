"""
Group resolution package.
"""
