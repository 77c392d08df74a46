"""auth/ -- Multi-tenant authentication core for TenantAuth.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (settings)
and cache/ (session projection). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
