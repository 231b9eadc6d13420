"""
Store package.

Abstract interfaces for the rule store, tenant directory, device directory
and verification log store, with two implementations:

- memory: dictionaries, for local runs and tests.
- postgres: asyncpg pool over the console's relational schema.
"""
