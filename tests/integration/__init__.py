"""
notebook-runtime — integration test package.

File: tests/integration/__init__.py

Purpose
- Package marker for tests that start real child interpreters through the
  local sandbox backend. Nothing here may reach the network.
"""
