"""auth/ -- Credential verification, access tokens and session invalidation for tokenward.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
