"""
Account byte layouts
"""
