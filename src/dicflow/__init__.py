"""`dicflow` - Distributed scheduling engine for subset-based Digital Image Correlation.

Subpackages:
- core: Field storage, distribution maps, communicators, synchronization
- pipeline: Correlation scheduler, per-point pipeline, initializers, output
- schemas: Pydantic configuration layers
- contracts: Fail-fast invariants between stages
"""

__version__ = "0.1.0"
