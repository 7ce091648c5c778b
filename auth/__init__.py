"""auth/ -- Authentication and authorization package for the back office.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, web/, audit/, or commerce/.
api/ and web/ import from auth/, not the other way around.
"""
