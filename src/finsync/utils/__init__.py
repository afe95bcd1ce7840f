"""
utils - Shared helpers (ids, time, payload codec).
"""
