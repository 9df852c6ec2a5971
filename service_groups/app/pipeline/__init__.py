"""
Mutation pipeline package.
"""
