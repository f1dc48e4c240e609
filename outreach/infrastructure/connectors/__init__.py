"""
Connectors Package
Outbound provider integrations.
"""
