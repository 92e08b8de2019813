import numpy as np

"""
This module provides the in-memory representation of a dynamic (4D) image
data set used throughout the factor analysis code.

A `DynamicDataSet` wraps a NumPy array laid out as (X, Y, Z, T) together with
the frame timing and the spatial metadata (affine, voxel size, modality) that
must be carried over to any image derived from it. It offers:

- Voxel access by (x, y, z, t) index.
- Frame timing: start, end and midpoint time of every frame.
- Per-frame and global intensity extrema.
- The voxel-by-frame matrix view (voxels flattened with x varying fastest,
  then y, then z) that the numerical routines operate on.
- A list of derived child data sets (e.g. the factor images).
"""

DEFAULT_MODALITY = "Other"


class DynamicDataSet:
    """
    A 4D voxel volume with frame timing and spatial metadata.

    A 3D array is accepted and treated as a static data set with a single
    frame. The data array is never modified by the analysis code.

    Args:
        data (np.ndarray): 3D (X, Y, Z) or 4D (X, Y, Z, T) array of intensities.
        name (str, optional): Name of the data set. Defaults to "data set".
        frame_start_times (array-like, optional): Start time (s) of every frame.
            Defaults to contiguous frames starting at 0.
        frame_durations (array-like | float, optional): Duration (s) of every
            frame, or a single duration used for all frames. Defaults to 1.0.
        affine (np.ndarray, optional): 4x4 voxel-to-world transform.
            Defaults to the identity scaled by the voxel size.
        voxel_size (tuple, optional): Voxel size (mm) along x, y, z.
            Defaults to (1.0, 1.0, 1.0).
        modality (str, optional): Imaging modality label. Defaults to "Other".

    Raises:
        ValueError: If `data` is not 3D or 4D, or if the timing arrays do not
                    have one entry per frame.
    """

    def __init__(self, data: np.ndarray, name: str = "data set",
                 frame_start_times=None, frame_durations=None,
                 affine: np.ndarray = None, voxel_size: tuple = None,
                 modality: str = DEFAULT_MODALITY):
        data = np.asarray(data)
        if data.ndim == 3:
            data = data[..., np.newaxis]  # static data set, single frame
        if data.ndim != 4:
            raise ValueError(f"Data set must be a 3D or 4D array. Got {data.ndim} dimensions.")
        self._data = data
        self.name = name
        self.modality = modality

        num_frames = data.shape[3]
        if frame_durations is None:
            frame_durations = 1.0
        durations = np.broadcast_to(np.asarray(frame_durations, dtype=float), (num_frames,)).copy()
        if frame_start_times is None:
            # Contiguous frames starting at time zero
            starts = np.concatenate(([0.0], np.cumsum(durations)[:-1]))
        else:
            starts = np.asarray(frame_start_times, dtype=float)
        if starts.shape != (num_frames,):
            raise ValueError(
                f"Expected {num_frames} frame start times, got {starts.size}."
            )
        self._frame_start_times = starts
        self._frame_durations = durations

        self.voxel_size = tuple(float(s) for s in (voxel_size if voxel_size is not None else (1.0, 1.0, 1.0)))
        if affine is None:
            affine = np.diag(list(self.voxel_size) + [1.0])
        self.affine = np.array(affine, dtype=float)

        self.children = []
        self.threshold_min = None
        self.threshold_max = None
        self._global_max = None
        self._global_min = None

    def __repr__(self):
        return f"DynamicDataSet(name={self.name!r}, dim={self.dim})"

    # --- Geometry ---
    @property
    def data(self) -> np.ndarray:
        """The underlying (X, Y, Z, T) array."""
        return self._data

    @property
    def dim(self) -> tuple:
        """Dimensions as (X, Y, Z, T)."""
        return tuple(int(d) for d in self._data.shape)

    @property
    def num_frames(self) -> int:
        return self._data.shape[3]

    @property
    def num_voxels(self) -> int:
        """Number of voxels in one frame (X*Y*Z)."""
        x, y, z, _ = self._data.shape
        return x * y * z

    @property
    def spatial_shape(self) -> tuple:
        return self.dim[:3]

    def is_dynamic(self) -> bool:
        return self.num_frames > 1

    # --- Voxel access ---
    def get_value(self, x: int, y: int, z: int, t: int) -> float:
        """Returns the intensity at voxel (x, y, z) in frame t as a float."""
        return float(self._data[x, y, z, t])

    def voxel_matrix(self) -> np.ndarray:
        """
        Returns the data as a (num_voxels, num_frames) float64 matrix.

        Row i holds the time course of the i-th voxel, with voxels ordered
        so that x varies fastest, then y, then z.
        """
        return np.asarray(self._data, dtype=np.float64).reshape((self.num_voxels, self.num_frames), order='F')

    def volume_from_voxel_vector(self, values: np.ndarray) -> np.ndarray:
        """Inverse of the voxel ordering used by `voxel_matrix` for one frame."""
        return np.asarray(values).reshape(self.spatial_shape, order='F')

    # --- Frame timing ---
    def get_start_time(self, frame: int) -> float:
        return float(self._frame_start_times[frame])

    def get_end_time(self, frame: int) -> float:
        return float(self._frame_start_times[frame] + self._frame_durations[frame])

    def get_midpoint_time(self, frame: int) -> float:
        return (self.get_start_time(frame) + self.get_end_time(frame)) / 2.0

    def frame_midpoints(self) -> np.ndarray:
        """Midpoint time (s) of every frame."""
        return self._frame_start_times + self._frame_durations / 2.0

    @property
    def frame_start_times(self) -> np.ndarray:
        return self._frame_start_times.copy()

    @property
    def frame_durations(self) -> np.ndarray:
        return self._frame_durations.copy()

    # --- Intensity extrema ---
    def frame_max(self, frame: int) -> float:
        """Maximum intensity within a single frame."""
        return float(np.max(self._data[..., frame]))

    def frame_maxima(self) -> np.ndarray:
        return np.max(self._data.reshape(-1, self.num_frames), axis=0).astype(np.float64)

    def calc_max_min(self):
        """(Re)computes the cached global maximum and minimum."""
        self._global_max = float(np.max(self._data))
        self._global_min = float(np.min(self._data))

    @property
    def global_max(self) -> float:
        if self._global_max is None:
            self.calc_max_min()
        return self._global_max

    @property
    def global_min(self) -> float:
        if self._global_min is None:
            self.calc_max_min()
        return self._global_min

    def set_thresholds(self, threshold_min: float, threshold_max: float):
        """Sets the display thresholds of the data set."""
        self.threshold_min = threshold_min
        self.threshold_max = threshold_max

    # --- Derived data sets ---
    def add_child(self, child: "DynamicDataSet"):
        self.children.append(child)

    def new_derived(self, volume: np.ndarray, name: str) -> "DynamicDataSet":
        """
        Creates a single-frame data set sharing this data set's geometry.

        The affine, voxel size and modality are copied; the new data set is
        not attached as a child.
        """
        volume = np.asarray(volume)
        if volume.shape[:3] != self.spatial_shape:
            raise ValueError(
                f"Derived volume shape {volume.shape[:3]} does not match "
                f"data set spatial shape {self.spatial_shape}."
            )
        return DynamicDataSet(
            volume,
            name=name,
            affine=self.affine.copy(),
            voxel_size=self.voxel_size,
            modality=self.modality,
        )
