"""
Institutions Service application package.
"""
