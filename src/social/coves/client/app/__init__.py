"""
Coves Client Application Layer

Process-level concerns shared by everything else in the package.

Key Components:
- config.py: Configuration management using Pydantic settings
- metrics.py: Vendor-neutral metrics client with statsd and no-op backends
- cli.py: Logging setup and the ``coves-client`` command line front end
- container.py: Wiring of settings, storage, services and stores
"""
