"""audit/ -- Audit trail: who did what to which resource, from where.

Layer rule: audit/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, web/, auth/, or commerce/.
"""
