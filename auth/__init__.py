"""auth/ -- Authentication core for Authgate.

Tokens, passwords, revocation, two-factor codes, external OAuth login and the
AuthService workflows that combine them.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and cache/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
auth/dependencies.py is the one FastAPI-aware module, because it is part of
the dependency injection wiring.
"""
