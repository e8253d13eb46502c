"""
Application Layer

Configuration, metrics and the command line entry point for the atclient library.

Key Components:
- config.py: Configuration management using Pydantic settings
- metrics.py: Backend agnostic metrics client used by the request chain
- cli.py: `atclient` command for interactive OAuth and app password logins
"""
