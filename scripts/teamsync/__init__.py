"""teamsync: declarative Microsoft Teams membership management.

Reads, applies and tests team membership records against Microsoft Graph,
and extracts the current membership of every team in a tenant into
declarative configuration using a pool of concurrent workers.
"""
