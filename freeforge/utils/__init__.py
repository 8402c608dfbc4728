"""
Parsing and logging helpers for FreeForge
"""
