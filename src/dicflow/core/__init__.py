"""Core data structures for the dicflow correlation engine.

Field storage, distribution maps, collective communication and the
scatter/gather protocol, plus the image and subset collaborators.
"""

from dicflow.core.fields import FieldName, StatusFlag, PointOutcome
from dicflow.core.field_store import FieldStore
from dicflow.core.distribution import DistributionMap, DistributionMaps, build_distribution_maps
from dicflow.core.comm import (
    Communicator,
    SerialCommunicator,
    ThreadGroup,
    ThreadCommunicator,
    MPICommunicator,
)
from dicflow.core.sync import FieldSynchronizer
from dicflow.core.image import Image
from dicflow.core.subset import Subset

__all__ = [
    'FieldName',
    'StatusFlag',
    'PointOutcome',
    'FieldStore',
    'DistributionMap',
    'DistributionMaps',
    'build_distribution_maps',
    'Communicator',
    'SerialCommunicator',
    'ThreadGroup',
    'ThreadCommunicator',
    'MPICommunicator',
    'FieldSynchronizer',
    'Image',
    'Subset',
]
