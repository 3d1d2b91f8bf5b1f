"""auth/ -- Session authentication and user management for Keygate.

Layer rule: auth/ imports only stdlib, third-party libraries, and cache/.
It does NOT import from api/ or core/. api/ imports from auth/, not the
other way around.
"""
