"""auth/ -- Session and credential gating for hubgate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/,
never core.gateway (which depends on cache/).
It does NOT import from api/ or cache/.
api/ imports from auth/, not the other way around.
"""
