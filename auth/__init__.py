"""auth/ -- Session security core: tokens, revocation, lockout, CSRF, password policy.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. Configuration arrives through
constructor arguments; api/ and main.py import from auth/, not the other way around.
"""
