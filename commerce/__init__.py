"""commerce/ -- Products, orders and the sales aggregates behind the dashboard.

Layer rule: commerce/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, web/, auth/, or audit/.
"""
