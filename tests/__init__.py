"""
Test suite for the tabledef schema engine.

Unit tests live in tests/unit and run against fake asyncpg pools and
connections that record the SQL they receive.
"""
