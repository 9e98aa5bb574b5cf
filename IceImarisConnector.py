"""
IceImarisConnector - Python access to Imaris through its ICE interface

IceImarisConnector is a simple commodity class that eases communication
between Imaris and Python/numpy using the Imaris XT interface (ImarisLib).

Key Features:
- Attach to a running Imaris (by application id or proxy) or launch one
- Volume transfer as numpy arrays (column-major and row-major)
- Dataset sizes, extends and voxel sizes
- Surpass scene traversal with automatic casting of the scene objects
- Spots read/write, camera rotation, unit <-> voxel coordinate mapping

Basic Usage:
    >>> from IceImarisConnector import IceImarisConnector
    >>>
    >>> conn = IceImarisConnector()
    >>> if conn.start_imaris():
    >>>     sizes = conn.get_sizes()
    >>>     stack = conn.get_data_volume(0, 0)
    >>>     conn.set_data_volume(stack, 0, 0)
    >>>     conn.close_imaris(quiet=True)

All channel and timepoint arguments are interpreted in the indexing base
chosen at construction (0, the ICE convention, by default).
"""

import logging
import random
import re
import time
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

import imaris_locator
from volume_marshaller import ConnectorError, DataType, VolumeMarshaller

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

STARTUP_TIMEOUT = 60.0   # seconds
STARTUP_POLL_INTERVAL = 0.1

# Surpass object types as exposed by the Imaris factory (Is<X>/To<X>).
# The keys are the names accepted as type_filter.
SURPASS_TYPES = {
    "Cells": "Cells",
    "ClippingPlane": "ClippingPlane",
    "Dataset": "DataSet",
    "Filaments": "Filaments",
    "Frame": "Frame",
    "LightSource": "LightSource",
    "MeasurementPoints": "MeasurementPoints",
    "Spots": "Spots",
    "Surfaces": "Surfaces",
    "SurpassCamera": "SurpassCamera",
    "Volume": "Volume",
    "DataContainer": "DataContainer",
}

_VERSION_NUMBER = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")


def _imaris_type(datatype: DataType):
    """Return the Imaris.tType enumerator for a DataType."""
    import Imaris
    return getattr(Imaris.tType, datatype.imaris_name)


class IceImarisConnector:
    """
    Connection to one Imaris instance.

    Args:
        imaris_application: None (not connected yet; use start_imaris()),
            an Imaris application id as passed to XTensions, an Imaris
            IApplication proxy, or another IceImarisConnector whose
            connection is shared
        indexing_start: 0 or 1, base of all channel/timepoint indices
        imaris_lib: ImarisLib instance; loaded on first use if omitted
    """

    def __init__(self, imaris_application=None, indexing_start: int = 0, imaris_lib=None):
        if indexing_start not in (0, 1):
            raise ValueError("indexing_start must be 0 or 1.")

        self._indexing_start = int(indexing_start)
        self._imaris_lib = imaris_lib
        self._application = None
        self._object_id: Optional[int] = None
        self._user_control = False
        self._marshaller = VolumeMarshaller(None, self._indexing_start)

        if imaris_application is None:
            return

        if isinstance(imaris_application, IceImarisConnector):
            if self._imaris_lib is None:
                self._imaris_lib = imaris_application._imaris_lib
            self._attach(imaris_application.imaris_application, imaris_application._object_id)

        elif isinstance(imaris_application, (int, np.integer)) and not isinstance(imaris_application, bool):
            self._attach_by_id(int(imaris_application))

        elif hasattr(imaris_application, "GetDataSet"):
            self._attach(imaris_application)

        else:
            raise ConnectorError("The passed object is not an Imaris application ID.")

    # ============================================================================
    # CONNECTION MANAGEMENT
    # ============================================================================

    @property
    def imaris_application(self):
        """The Imaris IApplication proxy (None when not connected)."""
        return self._application

    @property
    def indexing_start(self) -> int:
        return self._indexing_start

    @property
    def imaris_lib(self):
        if self._imaris_lib is None:
            self._imaris_lib = imaris_locator.load_imaris_lib()
        return self._imaris_lib

    @staticmethod
    def get_version() -> str:
        return VERSION

    def _attach(self, application, object_id: Optional[int] = None) -> None:
        self._application = application
        self._object_id = object_id
        self._marshaller = VolumeMarshaller(application, self._indexing_start)

    def _detach(self) -> None:
        self._attach(None)
        self._user_control = False

    def _attach_by_id(self, object_id: int) -> None:
        server = self.imaris_lib.GetServer()
        if server is None:
            raise ConnectorError("Could not reach the Imaris server.")

        n_apps = server.GetNumberOfObjects()
        if n_apps == 0:
            raise ConnectorError("There are no registered Imaris applications.")

        if object_id not in [server.GetObjectID(i) for i in range(n_apps)]:
            raise ConnectorError("Invalid Imaris application ID.")

        self._attach(self.imaris_lib.GetApplication(object_id), object_id)

    def is_alive(self) -> bool:
        """Check whether the connection to Imaris is usable."""
        return self._marshaller.is_alive()

    def start_imaris(self, user_control: bool = False, timeout: float = STARTUP_TIMEOUT) -> bool:
        """
        Launch a new Imaris instance and connect to it.

        An Imaris instance this connector is already attached to is closed
        first.

        Args:
            user_control: if True, disconnect() quits Imaris; by default
                          Imaris keeps running after disconnect()
            timeout: seconds to wait for Imaris to register with the server

        Returns:
            True if Imaris was started and connected

        Raises:
            ImarisNotFoundError: no Imaris installation could be found
        """
        if self.is_alive():
            self.close_imaris()

        paths = imaris_locator.find_imaris()
        lib = self.imaris_lib
        object_id = random.randint(1, 100000)

        try:
            process = imaris_locator.launch_imaris(paths, object_id)
        except OSError as e:
            logger.error("Could not start Imaris: %s", e)
            return False

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                application = lib.GetApplication(object_id)
            except Exception as e:
                logger.debug("Imaris not registered yet: %s", e)
                application = None

            if application is not None:
                self._attach(application, object_id)
                self._user_control = bool(user_control)
                logger.info("Connected to Imaris (id %d)", object_id)
                return True

            time.sleep(STARTUP_POLL_INTERVAL)

        logger.warning("Imaris did not register within %.1f s; terminating it", timeout)
        process.terminate()
        return False

    def close_imaris(self, quiet: bool = False) -> bool:
        """
        Quit the connected Imaris instance.

        Args:
            quiet: hide Imaris before quitting so no dialogs are shown

        Returns:
            True if Imaris was closed (or nothing was connected)
        """
        if not self.is_alive():
            self._detach()
            return True

        try:
            if quiet:
                self._application.SetVisible(False)
            self._application.Quit()
        except Exception as e:
            logger.error("Could not close Imaris: %s", e)
            return False

        self._detach()
        return True

    def disconnect(self) -> bool:
        """
        Release the connection.

        Imaris is quit only if it was launched by start_imaris() with
        user_control=True.
        """
        if self._user_control:
            return self.close_imaris(quiet=True)
        self._detach()
        return True

    def get_imaris_version_as_integer(self) -> int:
        """
        Imaris version as an integer, e.g. 'Imaris 9.5.1' -> 9050100.

        Returns 0 when not connected or when the version string is not parsable.
        """
        if not self.is_alive():
            return 0

        match = _VERSION_NUMBER.search(str(self._application.GetVersion()))
        if match is None:
            return 0

        major, minor, patch = (int(g) if g is not None else 0 for g in match.groups())
        return major * 1000000 + minor * 10000 + patch * 100

    def __str__(self) -> str:
        lines = [
            f"IceImarisConnector version {VERSION}",
            f"  Indexing start: {self._indexing_start}",
        ]
        if self.is_alive():
            lines.append(f"  Connected to Imaris (application id {self._object_id})")
        else:
            lines.append("  Not connected to Imaris")
        return "\n".join(lines)

    # ============================================================================
    # DATASET
    # ============================================================================

    def _current_dataset(self):
        return self._marshaller.active_dataset()

    def get_numpy_datatype(self) -> Optional[np.dtype]:
        """numpy dtype of the current dataset, or None."""
        dataset = self._current_dataset()
        if dataset is None:
            return None
        return DataType.from_imaris_type(dataset.GetType()).dtype

    def get_sizes(self) -> Optional[Tuple[int, int, int, int, int]]:
        """Dataset sizes as (x, y, z, c, t), or None."""
        dataset = self._current_dataset()
        if dataset is None:
            return None
        return (dataset.GetSizeX(), dataset.GetSizeY(), dataset.GetSizeZ(),
                dataset.GetSizeC(), dataset.GetSizeT())

    def get_extends(self) -> Optional[Tuple[float, float, float, float, float, float]]:
        """Dataset extends as (minX, maxX, minY, maxY, minZ, maxZ), or None."""
        dataset = self._current_dataset()
        if dataset is None:
            return None
        return (dataset.GetExtendMinX(), dataset.GetExtendMaxX(),
                dataset.GetExtendMinY(), dataset.GetExtendMaxY(),
                dataset.GetExtendMinZ(), dataset.GetExtendMaxZ())

    def get_voxel_sizes(self) -> Optional[Tuple[float, float, float]]:
        """Voxel sizes (x, y, z) in dataset units, or None."""
        dataset = self._current_dataset()
        if dataset is None:
            return None
        return ((dataset.GetExtendMaxX() - dataset.GetExtendMinX()) / dataset.GetSizeX(),
                (dataset.GetExtendMaxY() - dataset.GetExtendMinY()) / dataset.GetSizeY(),
                (dataset.GetExtendMaxZ() - dataset.GetExtendMinZ()) / dataset.GetSizeZ())

    def get_data_volume(self, channel: int, timepoint: int, dataset=None) -> Optional[np.ndarray]:
        """
        Get a data volume from Imaris as an (x, y, z) array.

        Args:
            channel: channel index
            timepoint: timepoint index
            dataset: (optional) IDataSet to read from instead of the current
                     one; useful e.g. when masking channels

        Returns:
            numpy array of dtype uint8, uint16 or float32; None if Imaris is
            not connected or has no data loaded
        """
        return self._marshaller.read_volume(channel, timepoint, dataset)

    def get_data_volume_rm(self, channel: int, timepoint: int, dataset=None) -> Optional[np.ndarray]:
        """Like get_data_volume, but in row-major order: (y, x, z)."""
        return self._marshaller.read_volume_rm(channel, timepoint, dataset)

    def set_data_volume(self, stack: np.ndarray, channel: int, timepoint: int) -> None:
        """
        Send a data volume to Imaris.

        Args:
            stack: (x, y, z) array with exactly the dtype of the current dataset
            channel: channel index
            timepoint: timepoint index
        """
        self._marshaller.write_volume(stack, channel, timepoint)

    def create_dataset(self, datatype, size_x: int, size_y: int, size_z: int,
                       size_c: int = 1, size_t: int = 1,
                       voxel_size_x: float = 1.0, voxel_size_y: float = 1.0,
                       voxel_size_z: float = 1.0, delta_time: float = 1.0):
        """
        Create an empty dataset and make it the current one in Imaris.

        Args:
            datatype: DataType, numpy dtype or anything np.dtype() accepts
                      (uint8, uint16 or float32)
            size_x, size_y, size_z, size_c, size_t: dataset sizes
            voxel_size_x, voxel_size_y, voxel_size_z: voxel sizes in units
            delta_time: time difference between consecutive timepoints

        Returns:
            the new IDataSet, or None if Imaris is not connected
        """
        if not isinstance(datatype, DataType):
            datatype = DataType.from_numpy(datatype)

        if not self.is_alive():
            return None

        dataset = self._application.GetFactory().CreateDataSet()
        dataset.Create(_imaris_type(datatype), size_x, size_y, size_z, size_c, size_t)

        dataset.SetExtendMinX(0.0)
        dataset.SetExtendMinY(0.0)
        dataset.SetExtendMinZ(0.0)
        dataset.SetExtendMaxX(size_x * voxel_size_x)
        dataset.SetExtendMaxY(size_y * voxel_size_y)
        dataset.SetExtendMaxZ(size_z * voxel_size_z)
        dataset.SetTimePointsDelta(delta_time)

        self._application.SetDataSet(dataset)
        return dataset

    # ============================================================================
    # SURPASS SCENE
    # ============================================================================

    def get_surpass_scene(self):
        """The Surpass scene (an IDataContainer), or None."""
        if not self.is_alive():
            return None
        return self._application.GetSurpassScene()

    def _surpass_type(self, obj) -> Optional[str]:
        factory = self._application.GetFactory()
        for name, imaris_name in SURPASS_TYPES.items():
            if getattr(factory, "Is" + imaris_name)(obj):
                return name
        return None

    def autocast(self, obj):
        """
        Cast a generic IDataItem to its concrete interface (ISpots, ...).

        Objects of unknown type are returned unchanged.
        """
        if obj is None or not self.is_alive():
            return obj
        name = self._surpass_type(obj)
        if name is None:
            return obj
        return getattr(self._application.GetFactory(), "To" + SURPASS_TYPES[name])(obj)

    def get_all_surpass_children(self, recursive: bool, type_filter: Optional[str] = None) -> List:
        """
        Return the objects in the Surpass scene.

        Data containers are never returned themselves; with recursive=True
        their content is returned too.

        Args:
            recursive: descend into data containers
            type_filter: (optional) only return objects of this type, one of
                         the keys of SURPASS_TYPES (e.g. 'Spots')

        Returns:
            list of autocast objects (empty if not connected)
        """
        if type_filter is not None and type_filter not in SURPASS_TYPES:
            raise ValueError(f"Unknown type filter '{type_filter}'.")

        scene = self.get_surpass_scene()
        if scene is None:
            return []

        children = []
        self._collect_children(scene, recursive, type_filter, children)
        return children

    def _collect_children(self, container, recursive, type_filter, children) -> None:
        for i in range(container.GetNumberOfChildren()):
            child = self.autocast(container.GetChild(i))
            child_type = self._surpass_type(child)

            if child_type == "DataContainer":
                if recursive:
                    self._collect_children(child, recursive, type_filter, children)
            elif type_filter is None or child_type == type_filter:
                children.append(child)

    # ============================================================================
    # SPOTS
    # ============================================================================

    def get_spots(self, spots=None) -> Optional[Dict[str, np.ndarray]]:
        """
        Read coordinates, time indices and radii of a Spots object.

        Args:
            spots: (optional) ISpots object; if omitted, the current Surpass
                   selection is used

        Returns:
            dict with 'coords' (N x 3), 'timeIndices' (N,) and 'radii' (N,),
            or None if there is no such Spots object
        """
        if not self.is_alive():
            return None

        if spots is None:
            spots = self._application.GetSurpassSelection()
        spots = self.autocast(spots)
        if spots is None or self._surpass_type(spots) != "Spots":
            return None

        coords = np.asarray(spots.GetPositionsXYZ(), dtype=np.float64).reshape(-1, 3)
        time_indices = np.asarray(spots.GetIndicesT(), dtype=np.int64) + self._indexing_start
        radii = np.asarray(spots.GetRadii(), dtype=np.float64)

        return {"coords": coords, "timeIndices": time_indices, "radii": radii}

    def set_spots(self, spot_struct: Dict, name: str = "Spots",
                  color: Tuple[float, float, float, float] = (1.0, 0.0, 0.0, 0.0)):
        """
        Create a Spots object and add it to the Surpass scene.

        Args:
            spot_struct: dict as returned by get_spots()
            name: name of the new object
            color: [r, g, b, a] in 0..1

        Returns:
            the new ISpots object, or None if not connected
        """
        coords = np.asarray(spot_struct["coords"], dtype=np.float64).reshape(-1, 3)
        time_indices = np.asarray(spot_struct["timeIndices"], dtype=np.int64).ravel()
        radii = np.asarray(spot_struct["radii"], dtype=np.float64).ravel()

        if not (len(coords) == len(time_indices) == len(radii)):
            raise ValueError("coords, timeIndices and radii must have the same length.")

        time_indices = time_indices - self._indexing_start
        if np.any(time_indices < 0):
            raise ValueError("Time indices are smaller than the indexing start.")

        if not self.is_alive():
            return None

        spots = self._application.GetFactory().CreateSpots()
        spots.Set(coords.tolist(), time_indices.tolist(), radii.tolist())
        spots.SetName(name)
        spots.SetColorRGBA(self.map_rgba_vector_to_scalar(color))
        self._application.GetSurpassScene().AddChild(spots, -1)
        return spots

    # ============================================================================
    # COORDINATES AND CAMERA
    # ============================================================================

    def get_surpass_camera_rotation_matrix(self) -> Tuple[Optional[np.ndarray], Optional[bool]]:
        """
        Rotation of the Surpass camera.

        Returns:
            (R, is_identity): R is the 4x4 homogeneous rotation matrix built
            from the camera quaternion [x, y, z, w]; (None, None) if not
            connected or there is no camera
        """
        if not self.is_alive():
            return None, None
        camera = self._application.GetSurpassCamera()
        if camera is None:
            return None, None

        quaternion = np.asarray(camera.GetOrientationQuaternion(), dtype=np.float64)
        R = np.eye(4)
        R[:3, :3] = Rotation.from_quat(quaternion).as_matrix()
        return R, bool(np.allclose(R, np.eye(4)))

    def _map_positions(self, positions, to_voxels: bool):
        if len(positions) == 1:
            points = np.asarray(positions[0], dtype=np.float64)
            if points.ndim != 2 or points.shape[1] != 3:
                raise ValueError("Positions must be an N x 3 array.")
        elif len(positions) == 3:
            points = np.column_stack([np.asarray(p, dtype=np.float64).ravel() for p in positions])
        else:
            raise ValueError("Pass either one N x 3 array or three coordinate arrays.")

        extends = self.get_extends()
        if extends is None:
            return None
        origin = np.array(extends[0::2])
        voxel_sizes = np.array(self.get_voxel_sizes())

        # voxel centres sit at integer coordinates (in the indexing base)
        if to_voxels:
            mapped = (points - origin) / voxel_sizes - 0.5 + self._indexing_start
        else:
            mapped = (points - self._indexing_start + 0.5) * voxel_sizes + origin

        if len(positions) == 3:
            return mapped[:, 0], mapped[:, 1], mapped[:, 2]
        return mapped

    def map_positions_units_to_voxels(self, *positions):
        """
        Map dataset units to voxel coordinates.

        Accepts one N x 3 array, or three arrays (x, y, z); returns the same
        form. Returns None if there is no dataset.
        """
        return self._map_positions(positions, to_voxels=True)

    def map_positions_voxels_to_units(self, *positions):
        """Inverse of map_positions_units_to_voxels."""
        return self._map_positions(positions, to_voxels=False)

    # ============================================================================
    # COLORS
    # ============================================================================

    @staticmethod
    def map_rgba_vector_to_scalar(rgba) -> int:
        """[r, g, b, a] in 0..1 -> Imaris uint32 color (r in the lowest byte)."""
        rgba = np.asarray(rgba, dtype=np.float64).ravel()
        if rgba.size != 4:
            raise ValueError("RGBA vector must have 4 elements.")
        if np.any(rgba < 0) or np.any(rgba > 1):
            raise ValueError("RGBA values must be between 0 and 1.")

        r, g, b, a = (int(c) for c in np.round(rgba * 255))
        return r + (g << 8) + (b << 16) + (a << 24)

    @staticmethod
    def map_rgba_scalar_to_vector(rgba_scalar: int) -> np.ndarray:
        """Imaris uint32 color -> [r, g, b, a] in 0..1."""
        value = int(rgba_scalar) & 0xFFFFFFFF
        channels = [(value >> shift) & 0xFF for shift in (0, 8, 16, 24)]
        return np.array(channels, dtype=np.float64) / 255.0
