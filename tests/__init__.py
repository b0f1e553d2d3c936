"""
Tests Package

Test structure:
- tests/conftest.py - shared pytest fixtures (settings, temp database path)
- tests/support.py - fakes (event recorder, clock) and HTML page builders
- tests/test_*.py - one module per component

Async code is driven with ``asyncio.run`` inside plain test functions; every
test opens its own SQLite file under ``tmp_path``.
"""
