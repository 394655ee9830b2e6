"""
Integration tests for the fleet monitor.

These tests run a session against an in-process backend (aiohttp test
server) serving the REST endpoints and the push channel on localhost.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
