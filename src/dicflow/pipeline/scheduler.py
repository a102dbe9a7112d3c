"""Correlation scheduler: per-frame driver of the engine on one rank.

The scheduler owns everything a frame needs: the reference, previous and
deformed images, the replicated field views (current frame and ``nm1``),
the distributed views of the active map, the subsets and the per-point
collaborators. Collaborators address points by id and read or write fields
through the scheduler.

Per frame (:meth:`CorrelationScheduler.execute_correlation`):

1. select the active map from the rank count, initialization method and
   frame index,
2. reset motion detectors and scatter the all-view into the active view,
3. run every local point through the :class:`CorrelationPipeline` in map
   order (refreshing obstruction masks first in tracking mode),
4. gather back into the all-view, run post-processors, advance the frame.
"""

import logging
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from dicflow.contracts import assert_field_store_shape, require
from dicflow.core.comm import Communicator, SerialCommunicator
from dicflow.core.distribution import DistributionMap, DistributionMaps, build_distribution_maps
from dicflow.core.field_store import FieldStore
from dicflow.core.fields import (
    DEFORMATION_FIELDS,
    NUM_FIELDS,
    CorrelationRoutine,
    FieldName,
    InitializationMethod,
    PointOutcome,
    StatusFlag,
    TargetFieldDescriptor,
)
from dicflow.core.image import Image, phase_correlate_x_y
from dicflow.core.subset import Subset
from dicflow.core.sync import FieldSynchronizer
from dicflow.pipeline.correlation import CorrelationPipeline
from dicflow.pipeline.initializers import PathInitializer, PathTrajectory
from dicflow.pipeline.motion import MotionDetector
from dicflow.pipeline.obstruction import ObstructionManager
from dicflow.pipeline.post_processors import PostProcessor, create_post_processor

if TYPE_CHECKING:
    from dicflow.pipeline.objective import Objective
    from dicflow.schemas import InternalConfig

__all__ = ['CorrelationScheduler', 'DISTRIBUTED_INIT_METHODS']

logger = logging.getLogger(__name__)

ObjectiveFactory = Callable[["CorrelationScheduler", int], "Objective"]

# initialization methods that can run on more than one rank
DISTRIBUTED_INIT_METHODS = (
    InitializationMethod.USE_FIELD_VALUES.value,
    InitializationMethod.USE_NEIGHBOR_VALUES.value,
    InitializationMethod.USE_NEIGHBOR_VALUES_FIRST_STEP_ONLY.value,
)


class CorrelationScheduler:
    """Drives the correlation of the points held by one rank.

    Parameters
    ----------
    config : InternalConfig
        Fully validated runtime configuration.
    ref_image, def_image : Image
        Reference and first deformed image (same size). Configured
        rotations are applied here.
    comm : Communicator, optional
        Rank identity and collectives (serial by default).
    objective_factory : callable, optional
        ``objective_factory(scheduler, point_id) -> Objective``. Required
        before :meth:`execute_correlation`.

    Example usage::

        scheduler = CorrelationScheduler(config, ref, deformed,
                                         objective_factory=MyObjective)
        scheduler.initialize_grid(step_size_x=10, step_size_y=10, subset_size=21)
        outcomes = scheduler.execute_correlation()
        scheduler.set_def_image(next_image)
        outcomes = scheduler.execute_correlation()
    """

    def __init__(self, config: "InternalConfig", ref_image: Image, def_image: Image,
                 comm: Optional[Communicator] = None,
                 objective_factory: Optional[ObjectiveFactory] = None):
        self.config = config
        self.comm = comm if comm is not None else SerialCommunicator()
        self.objective_factory = objective_factory

        self.ref_img = self._prepare(ref_image, config.images.ref_rotation,
                                     config.images.compute_ref_gradients)
        self.def_img: Optional[Image] = None
        self.set_def_image(def_image)
        self.prev_img = self.ref_img

        self.frame = 0
        self.num_points = 0
        self.is_initialized = False
        self.maps: Optional[DistributionMaps] = None
        self.all_fields: Optional[FieldStore] = None
        self.all_fields_nm1: Optional[FieldStore] = None
        self.target_field_descriptor: Optional[TargetFieldDescriptor] = None
        self.local_ids: List[int] = []
        self._views: Dict[TargetFieldDescriptor, Tuple[FieldStore, FieldStore, FieldSynchronizer]] = {}

        self.subsets: Dict[int, Subset] = {}
        self.objectives: Dict[int, "Objective"] = {}
        self.motion_detectors: Dict[int, MotionDetector] = {}
        self.path_initializers: Dict[int, PathInitializer] = {}
        self.obstruction: ObstructionManager = ObstructionManager({}, config.obstruction.skin_factor)
        self.post_processors: List[PostProcessor] = [
            create_post_processor(name, self) for name in config.post_processors
        ]
        self.phase_cor_u_x = 0.0
        self.phase_cor_u_y = 0.0

    # ------------------------------------------------------------------
    # images
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare(image: Image, rotation: int, gradients: bool) -> Image:
        image = image.apply_rotation(rotation)
        if gradients and not image.has_gradients:
            image.compute_gradients()
        return image

    def _check_size(self, image: Image, name: str) -> None:
        if (image.width, image.height) != (self.ref_img.width, self.ref_img.height):
            raise ValueError(
                f"{name} image is {image.width}x{image.height} but the reference image is "
                f"{self.ref_img.width}x{self.ref_img.height}"
            )

    def set_def_image(self, image: Image) -> None:
        """Replace the deformed image (rotated and checked against the reference)."""
        image = self._prepare(image, self.config.images.def_rotation,
                              self.config.images.compute_def_gradients)
        self._check_size(image, "Deformed")
        self.def_img = image

    def set_ref_image(self, image: Image) -> None:
        """Replace the reference image (rotated and checked against the deformed image)."""
        image = self._prepare(image, self.config.images.ref_rotation,
                              self.config.images.compute_ref_gradients)
        if self.def_img is not None and (image.width, image.height) != (self.def_img.width, self.def_img.height):
            raise ValueError(
                f"Reference image is {image.width}x{image.height} but the deformed image is "
                f"{self.def_img.width}x{self.def_img.height}"
            )
        self.ref_img = image

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------

    @property
    def rank(self) -> int:
        return self.comm.rank

    def initialize_grid(self, step_size_x: int, step_size_y: int, subset_size: int) -> None:
        """Lay square subsets on a regular grid inside the reference image.

        A border of one subset size is left on every side; point ``i`` sits
        at ``x = subset_size + ix * step_size_x - 1`` (rows of x first).
        """
        if subset_size <= 0:
            raise ValueError(f"Subset size must be positive, got {subset_size}")
        if step_size_x <= 0 or step_size_y <= 0:
            raise ValueError(f"Step sizes must be positive, got ({step_size_x}, {step_size_y})")
        trimmed_width = self.ref_img.width - 2 * subset_size
        trimmed_height = self.ref_img.height - 2 * subset_size
        if trimmed_width < 0 or trimmed_height < 0:
            raise ValueError(
                f"Subset size {subset_size} leaves no room for points in a "
                f"{self.ref_img.width}x{self.ref_img.height} image"
            )
        num_x = trimmed_width // step_size_x + 1
        num_y = trimmed_height // step_size_y + 1
        ix, iy = np.meshgrid(np.arange(num_x), np.arange(num_y))
        coords_x = subset_size + ix.ravel() * step_size_x - 1
        coords_y = subset_size + iy.ravel() * step_size_y - 1
        logger.info("Grid of %dx%d points (step %d, %d; subset %d)",
                    num_x, num_y, step_size_x, step_size_y, subset_size)
        self.initialize(coords_x, coords_y, subset_size=subset_size)

    def initialize(self, coordinates_x: Sequence[float], coordinates_y: Sequence[float],
                   subset_size: Optional[int] = None,
                   neighbor_ids: Optional[Sequence[int]] = None,
                   obstructing_ids: Optional[Mapping[int, Sequence[int]]] = None,
                   subsets: Optional[Mapping[int, Subset]] = None) -> None:
        """Create the points, maps, field views and per-point collaborators.

        Parameters
        ----------
        coordinates_x, coordinates_y : sequence of float
            Reference position of each point; the point count is their length.
        subset_size : int, optional
            Size of the square subset of every point without a conformal subset.
        neighbor_ids : sequence of int, optional
            Neighbor used for initialization per point (-1 marks a seed).
        obstructing_ids : mapping, optional
            Point id -> ids of the points that block it.
        subsets : mapping, optional
            Point id -> conformal Subset.

        Raises
        ------
        ValueError
            For inconsistent sizes, out-of-range point ids, a missing subset
            size, or an initialization method that cannot run on this many
            ranks.
        """
        require(not self.is_initialized, "Scheduler contract violated: initialize() called twice")
        num_points = len(coordinates_x)
        if len(coordinates_y) != num_points:
            raise ValueError(f"Got {num_points} x coordinates but {len(coordinates_y)} y coordinates")
        if num_points <= 0:
            raise ValueError(f"Number of points must be positive, got {num_points}")

        method = self.config.initialization.method
        if self.comm.size > 1 and method not in DISTRIBUTED_INIT_METHODS:
            raise ValueError(
                f"Initialization method {method!r} is not supported with {self.comm.size} ranks; "
                f"use one of {list(DISTRIBUTED_INIT_METHODS)}"
            )

        subsets = dict(subsets or {})
        self._check_point_ids(num_points, "conformal subset", subsets)
        if len(subsets) < num_points and (subset_size is None or subset_size <= 0):
            raise ValueError("A positive subset_size is required for points without a conformal subset")

        self.num_points = num_points
        self.maps = build_distribution_maps(num_points, self.comm.size, obstructing_ids, neighbor_ids)
        self.obstruction = ObstructionManager(obstructing_ids or {}, self.config.obstruction.skin_factor)

        all_ids = self.maps.all.local_ids(self.rank)
        self.all_fields = FieldStore(all_ids)
        self.all_fields_nm1 = FieldStore(all_ids)
        assert_field_store_shape(self.all_fields, all_ids, NUM_FIELDS)

        for gid in range(num_points):
            cx, cy = float(coordinates_x[gid]), float(coordinates_y[gid])
            for store in (self.all_fields, self.all_fields_nm1):
                store.set(gid, FieldName.COORDINATE_X, cx)
                store.set(gid, FieldName.COORDINATE_Y, cy)
                store.set(gid, FieldName.NEIGHBOR_ID, -1 if neighbor_ids is None else neighbor_ids[gid])
            if gid in subsets:
                self.subsets[gid] = subsets[gid]
            else:
                self.subsets[gid] = Subset.square(int(round(cx)), int(round(cy)), subset_size)

        self._setup_point_collaborators(num_points)

        for pp in self.post_processors:
            pp.initialize()

        self.is_initialized = True
        logger.info("[RANK %d] Initialized %d points on %d rank(s)", self.rank, num_points, self.comm.size)

    @staticmethod
    def _check_point_ids(num_points: int, name: str, ids) -> None:
        bad = sorted(int(gid) for gid in ids if not 0 <= int(gid) < num_points)
        if bad:
            raise ValueError(f"{name} ids {bad[:10]} are outside [0, {num_points})")

    def _setup_point_collaborators(self, num_points: int) -> None:
        cfg = self.config
        self._check_point_ids(num_points, "Path file", cfg.initialization.path_files)
        self._check_point_ids(num_points, "Skip-solve", cfg.subsets.skip_solve)
        self._check_point_ids(num_points, "Motion window", cfg.subsets.motion_windows)
        self._check_point_ids(
            num_points, "Motion window use_subset_id",
            [w.use_subset_id for w in cfg.subsets.motion_windows.values() if w.use_subset_id != -1],
        )
        width, height = self.ref_img.width, self.ref_img.height
        for gid, window in cfg.subsets.motion_windows.items():
            if window.use_subset_id != -1:
                continue
            if window.origin_x + window.width > width or window.origin_y + window.height > height:
                raise ValueError(
                    f"Motion window of point {gid} ({window.origin_x}, {window.origin_y}, "
                    f"{window.width}x{window.height}) does not fit in a {width}x{height} image"
                )
        for gid, path_file in cfg.initialization.path_files.items():
            self.path_initializers[gid] = PathInitializer(
                PathTrajectory.from_file(path_file), cfg.initialization.path_neighbors)

    # ------------------------------------------------------------------
    # field access
    # ------------------------------------------------------------------

    def _view(self, descriptor: TargetFieldDescriptor) -> Tuple[FieldStore, FieldStore, Optional[FieldSynchronizer]]:
        if descriptor == TargetFieldDescriptor.ALL_OWNED:
            return self.all_fields, self.all_fields_nm1, None
        if descriptor not in self._views:
            dist_map: DistributionMap = (
                self.maps.seed if descriptor == TargetFieldDescriptor.DISTRIBUTED_GROUPED_BY_SEED
                else self.maps.owned
            )
            ids = dist_map.local_ids(self.rank)
            fields, fields_nm1 = FieldStore(ids), FieldStore(ids)
            sync = FieldSynchronizer(self.comm, [(self.all_fields, fields), (self.all_fields_nm1, fields_nm1)])
            self._views[descriptor] = (fields, fields_nm1, sync)
        return self._views[descriptor]

    @property
    def active_fields(self) -> FieldStore:
        require(self.target_field_descriptor is not None,
                "Scheduler contract violated: no active field view before execute_correlation()")
        return self._view(self.target_field_descriptor)[0]

    @property
    def active_fields_nm1(self) -> FieldStore:
        require(self.target_field_descriptor is not None,
                "Scheduler contract violated: no active field view before execute_correlation()")
        return self._view(self.target_field_descriptor)[1]

    def _local_store(self, previous: bool = False) -> FieldStore:
        if self.target_field_descriptor is None:
            return self.all_fields_nm1 if previous else self.all_fields
        return self.active_fields_nm1 if previous else self.active_fields

    def field_value(self, point_id: int, name: FieldName) -> float:
        """Value from the replicated all-view (valid after a gather)."""
        return self.all_fields.get(point_id, name)

    def local_field_value(self, point_id: int, name: FieldName, previous: bool = False) -> float:
        """Value from the active view; ``previous`` reads the nm1 store."""
        return self._local_store(previous).get(point_id, name)

    def set_local_field_value(self, point_id: int, name: FieldName, value: float) -> None:
        self._local_store().set(point_id, name, value)

    def add_local_field_value(self, point_id: int, name: FieldName, value: float) -> None:
        self._local_store().add(point_id, name, value)

    def is_local(self, point_id: int) -> bool:
        return point_id in self._local_store()

    def subset(self, point_id: int) -> Subset:
        return self.subsets[point_id]

    def path_initializer(self, point_id: int) -> Optional[PathInitializer]:
        return self.path_initializers.get(point_id)

    def record_step(self, point_id: int, deformation: np.ndarray, sigma: float, match: float,
                    gamma: float, status: StatusFlag, num_iterations: int) -> None:
        """Write a solution and its quality metrics into the active view."""
        store = self._local_store()
        store.set_deformation(point_id, deformation)
        store.set(point_id, FieldName.SIGMA, sigma)
        store.set(point_id, FieldName.MATCH, match)
        store.set(point_id, FieldName.GAMMA, gamma)
        store.set(point_id, FieldName.STATUS_FLAG, int(status))
        store.set(point_id, FieldName.ITERATIONS, num_iterations)

    def record_failed_step(self, point_id: int, status: StatusFlag, num_iterations: int) -> None:
        """Mark a failure; displacement fields keep their previous values."""
        store = self._local_store()
        store.set(point_id, FieldName.SIGMA, -1.0)
        store.set(point_id, FieldName.MATCH, -1.0)
        store.set(point_id, FieldName.GAMMA, -1.0)
        store.set(point_id, FieldName.STATUS_FLAG, int(status))
        store.set(point_id, FieldName.ITERATIONS, num_iterations)

    def save_off_fields(self, point_id: int) -> None:
        """Copy the point's current deformation into the previous-frame store."""
        current, previous = self._local_store(), self._local_store(previous=True)
        for name in DEFORMATION_FIELDS:
            previous.set(point_id, name, current.get(point_id, name))

    def motion_detected(self, point_id: int) -> bool:
        """Motion test for the point's window (own or borrowed); True without a window."""
        windows = self.config.subsets.motion_windows
        window = windows.get(point_id)
        if window is None:
            return True
        use_id = point_id if window.use_subset_id == -1 else window.use_subset_id
        detector = self.motion_detectors.get(use_id)
        if detector is None:
            params = windows[use_id]
            detector = MotionDetector(params.origin_x, params.origin_y, params.width,
                                      params.height, params.tol)
            self.motion_detectors[use_id] = detector
        motion = detector.motion_detected(self.def_img)
        logger.debug("Point %d motion test with window of point %d: %s", point_id, use_id, motion)
        return motion

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def _select_target(self) -> None:
        """Pick the active map for this frame."""
        method = self.config.initialization.method
        maps = self.maps
        if self.comm.size == 1:
            if self.frame == 0 or self.target_field_descriptor is None:
                self.target_field_descriptor = TargetFieldDescriptor.ALL_OWNED
                self.local_ids = maps.all.local_ids(self.rank)
        elif method == InitializationMethod.USE_FIELD_VALUES:
            self.target_field_descriptor = TargetFieldDescriptor.DISTRIBUTED
            self.local_ids = maps.owned.local_ids(self.rank)
        elif method == InitializationMethod.USE_NEIGHBOR_VALUES_FIRST_STEP_ONLY:
            if self.frame == 0:
                self.target_field_descriptor = TargetFieldDescriptor.DISTRIBUTED_GROUPED_BY_SEED
                self.local_ids = maps.seed.local_ids(self.rank)
            elif self.frame == 1 or self.target_field_descriptor is None:
                self.target_field_descriptor = TargetFieldDescriptor.DISTRIBUTED
                self.local_ids = maps.owned.local_ids(self.rank)
        elif method == InitializationMethod.USE_NEIGHBOR_VALUES:
            if self.frame == 0 or self.target_field_descriptor is None:
                self.target_field_descriptor = TargetFieldDescriptor.DISTRIBUTED_GROUPED_BY_SEED
                self.local_ids = maps.seed.local_ids(self.rank)
        else:
            raise ValueError(
                f"Initialization method {method!r} is not supported with {self.comm.size} ranks"
            )
        logger.debug("[RANK %d] frame %d: target field descriptor %s with %d local points",
                     self.rank, self.frame, self.target_field_descriptor.value, len(self.local_ids))

    def _objective(self, point_id: int) -> "Objective":
        require(self.objective_factory is not None,
                "Scheduler contract violated: no objective factory configured")
        return self.objective_factory(self, point_id)

    def execute_correlation(self) -> Dict[int, PointOutcome]:
        """Correlate every local point for the current frame.

        Returns
        -------
        dict
            Point id -> PointOutcome for the points processed on this rank.
        """
        require(self.is_initialized, "Scheduler contract violated: execute_correlation() before initialize()")
        self._select_target()

        for use_id, detector in self.motion_detectors.items():
            logger.debug("Resetting motion detector: %d", use_id)
            detector.reset()

        if self.frame == 0:
            for pp in self.post_processors:
                pp.pre_execution_tasks()

        fields, _, sync = self._view(self.target_field_descriptor)
        if sync is not None:
            sync.scatter()

        if self.config.initialization.method == InitializationMethod.USE_PHASE_CORRELATION:
            self.phase_cor_u_x, self.phase_cor_u_y = phase_correlate_x_y(self.prev_img, self.def_img)
            logger.debug(" - phase correlation initial displacements ux: %.4f uy: %.4f",
                         self.phase_cor_u_x, self.phase_cor_u_y)

        pipeline = CorrelationPipeline(self)
        outcomes: Dict[int, PointOutcome] = {}
        if self.config.solver.correlation_routine == CorrelationRoutine.GENERIC:
            # one objective per point per frame
            for gid in self.local_ids:
                outcomes[gid] = pipeline.run(self._objective(gid))
        else:
            # objectives persist for the run
            for gid in self.local_ids:
                if gid not in self.objectives:
                    logger.debug("[RANK %d] Adding objective for point %d", self.rank, gid)
                    self.objectives[gid] = self._objective(gid)
            for gid in self.local_ids:
                if self.obstruction.is_blocked(gid):
                    self.obstruction.update_blocked_pixels(gid, self.objectives, fields)
                outcomes[gid] = pipeline.run(self.objectives[gid])
            self.prev_img = self.def_img

        if sync is not None:
            sync.gather()

        if self.rank == 0:
            for gid in range(self.num_points):
                logger.debug(
                    "[RANK %d] Point %d synced-up solution, u: %.6f v: %.6f theta: %.6f sigma: %.6f gamma: %.6f",
                    self.rank, gid,
                    self.field_value(gid, FieldName.DISPLACEMENT_X),
                    self.field_value(gid, FieldName.DISPLACEMENT_Y),
                    self.field_value(gid, FieldName.ROTATION_Z),
                    self.field_value(gid, FieldName.SIGMA),
                    self.field_value(gid, FieldName.GAMMA),
                )

        for pp in self.post_processors:
            pp.execute()

        num_ok = sum(1 for o in outcomes.values() if o == PointOutcome.SUCCESS)
        logger.info("[RANK %d] Frame %d complete: %d/%d points successful",
                    self.rank, self.frame, num_ok, len(outcomes))
        self.frame += 1
        return outcomes

    def print_fields(self) -> None:
        """Log every field of every point from the all-view."""
        for gid in range(self.num_points):
            values = ", ".join(
                f"{name.name}={self.field_value(gid, name):.6g}" for name in FieldName
            )
            logger.info("[RANK %d] Point %d: %s", self.rank, gid, values)
