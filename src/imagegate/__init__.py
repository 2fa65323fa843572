"""
imagegate - build, verify, and publish container images for the service catalog.

Subpackages:
- imagegate.core: error taxonomy and structured logging
- imagegate.pipeline: catalog, builder, verifier, pusher, orchestrator
- imagegate.cli: ``imagegate`` command line
"""

__version__ = "0.1.0"
