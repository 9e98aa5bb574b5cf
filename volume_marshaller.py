"""
volume_marshaller - numpy <-> Imaris voxel buffer conversion

Imaris stores a (channel, timepoint) volume as a flat, typed buffer with X
running fastest. This module converts such buffers into (X, Y, Z) numpy
arrays and back, validating indices, datatype and size before anything is
sent to Imaris.

Basic Usage:
    >>> marshaller = VolumeMarshaller(vImarisApplication, indexing_start=0)
    >>> stack = marshaller.read_volume(0, 0)
    >>> marshaller.write_volume(stack * 2, 0, 0)
"""

import logging
import operator
from enum import Enum
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class ConnectorError(RuntimeError):
    """Base class for all errors raised by the connector."""


class IndexOutOfBoundsError(ConnectorError, IndexError):
    """Channel or timepoint outside of the dataset."""


class DatatypeMismatchError(ConnectorError, TypeError):
    """Array dtype does not match the dataset type."""


class SizeMismatchError(ConnectorError, ValueError):
    """Array shape does not match the dataset size."""


class UnsupportedDatatypeError(ConnectorError):
    """Dataset reports a type the connector cannot transfer."""


# ============================================================================
# DATATYPE TAGS
# ============================================================================

class DataType(Enum):
    """
    Imaris voxel types.

    Each member carries:
        imaris_name: name of the Imaris tType enumerator
        dtype:       numpy dtype handed to / expected from the caller
        wire_dtype:  element type ICE uses on the wire (signed for shorts)
        suffix:      suffix of the GetDataVolumeAs1DArray* accessors
    """

    UInt8 = ("eTypeUInt8", np.uint8, np.int8, "Bytes")
    UInt16 = ("eTypeUInt16", np.uint16, np.int16, "Shorts")
    Float32 = ("eTypeFloat", np.float32, np.float32, "Floats")

    def __init__(self, imaris_name, dtype, wire_dtype, suffix):
        self.imaris_name = imaris_name
        self.dtype = np.dtype(dtype)
        self.wire_dtype = np.dtype(wire_dtype)
        self.suffix = suffix

    @property
    def read_accessor(self) -> str:
        return "GetDataVolumeAs1DArray" + self.suffix

    @property
    def write_accessor(self) -> str:
        return "SetDataVolumeAs1DArray" + self.suffix

    @classmethod
    def from_imaris_type(cls, imaris_type) -> "DataType":
        """
        Map an Imaris tType value (or its name) to a DataType.

        Raises:
            UnsupportedDatatypeError: for eTypeUnknown and anything else
        """
        name = str(imaris_type)
        # ICE enumerators may print with their scope, e.g. "Imaris.tType.eTypeUInt8"
        name = name.rsplit(".", 1)[-1]
        for member in cls:
            if member.imaris_name == name:
                return member
        raise UnsupportedDatatypeError(f"Unsupported Imaris datatype '{name}'.")

    @classmethod
    def from_numpy(cls, dtype) -> "DataType":
        dtype = np.dtype(dtype)
        for member in cls:
            if member.dtype == dtype:
                return member
        raise UnsupportedDatatypeError(f"No Imaris datatype for numpy dtype '{dtype}'.")

    def decode(self, data) -> np.ndarray:
        """Turn what the read accessor returned into a flat array of self.dtype."""
        if isinstance(data, (bytes, bytearray, memoryview)):
            # frombuffer shares the (read-only) buffer
            raw = np.frombuffer(data, dtype=self.wire_dtype).copy()
        else:
            # astype wraps unsigned values into the signed wire type
            raw = np.asarray(data).astype(self.wire_dtype)
        return raw.view(self.dtype)

    def encode(self, flat: np.ndarray):
        """Turn a flat array of self.dtype into what the write accessor expects."""
        if self is DataType.UInt8:
            return flat.tobytes()
        return flat.view(self.wire_dtype).tolist()


# ============================================================================
# MARSHALLER
# ============================================================================

class VolumeMarshaller:
    """
    Transfers single (channel, timepoint) volumes between numpy and Imaris.

    The application proxy is not owned: the marshaller never connects,
    reconnects or closes it. When the application is gone every call quietly
    returns None (reads) or does nothing (writes); all other problems raise.
    """

    def __init__(self, imaris_application, indexing_start: int = 0):
        """
        Args:
            imaris_application: Imaris IApplication proxy (may be None)
            indexing_start: 0 or 1; base of all channel/timepoint arguments
        """
        if indexing_start not in (0, 1):
            raise ValueError("indexing_start must be 0 or 1.")
        self._application = imaris_application
        self._indexing_start = int(indexing_start)

    @property
    def indexing_start(self) -> int:
        return self._indexing_start

    @property
    def imaris_application(self):
        return self._application

    def is_alive(self) -> bool:
        """Probe the application proxy. Never raises."""
        if self._application is None:
            return False
        try:
            self._application.GetIds()
            return True
        except Exception as e:
            logger.debug("Imaris liveness probe failed: %s", e)
            return False

    def active_dataset(self, dataset=None):
        """
        Return the dataset to work on, or None if there is nothing to do.

        Nothing to do means: Imaris is not alive, no dataset is loaded, or
        the dataset is empty (size X == 0).
        """
        if not self.is_alive():
            return None
        if dataset is None:
            dataset = self._application.GetDataSet()
        if dataset is None or dataset.GetSizeX() == 0:
            return None
        return dataset

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    @staticmethod
    def _as_index(value, name: str) -> int:
        """Accept integers and integral floats; anything else is a TypeError."""
        try:
            return operator.index(value)
        except TypeError:
            pass
        if isinstance(value, (float, np.floating)) and float(value).is_integer():
            return int(value)
        raise TypeError(f"The {name} index must be an integer, got {value!r}.")

    def _to_zero_based(self, dataset, channel: int, timepoint: int) -> Tuple[int, int]:
        channel = self._as_index(channel, "channel") - self._indexing_start
        timepoint = self._as_index(timepoint, "time") - self._indexing_start

        if channel < 0 or channel > dataset.GetSizeC() - 1:
            raise IndexOutOfBoundsError("The requested channel index is out of bounds.")
        if timepoint < 0 or timepoint > dataset.GetSizeT() - 1:
            raise IndexOutOfBoundsError("The requested time index is out of bounds.")
        return channel, timepoint

    @staticmethod
    def _spatial_shape(dataset) -> Tuple[int, int, int]:
        return dataset.GetSizeX(), dataset.GetSizeY(), dataset.GetSizeZ()

    # ------------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------------

    def read_volume(self, channel: int, timepoint: int, dataset=None) -> Optional[np.ndarray]:
        """
        Read one volume from Imaris.

        Args:
            channel: channel index (in the configured indexing base)
            timepoint: timepoint index (in the configured indexing base)
            dataset: (optional) IDataSet to read from instead of the current one

        Returns:
            (X, Y, Z) array of the dataset's dtype, or None when Imaris is
            not reachable or has no data loaded
        """
        dataset = self.active_dataset(dataset)
        if dataset is None:
            return None

        channel, timepoint = self._to_zero_based(dataset, channel, timepoint)
        datatype = DataType.from_imaris_type(dataset.GetType())

        data = getattr(dataset, datatype.read_accessor)(channel, timepoint)
        flat = datatype.decode(data)

        return flat.reshape(self._spatial_shape(dataset), order='F')

    def read_volume_rm(self, channel: int, timepoint: int, dataset=None) -> Optional[np.ndarray]:
        """Same as read_volume but returns the volume as (Y, X, Z)."""
        stack = self.read_volume(channel, timepoint, dataset)
        if stack is None:
            return None
        return np.transpose(stack, (1, 0, 2))

    def write_volume(self, stack: np.ndarray, channel: int, timepoint: int) -> None:
        """
        Write one volume to the current Imaris dataset.

        Args:
            stack: (X, Y, Z) array; a 2D array is a single plane, a trailing
                   singleton 4th dimension is accepted
            channel: channel index (in the configured indexing base)
            timepoint: timepoint index (in the configured indexing base)

        Raises:
            IndexOutOfBoundsError, DatatypeMismatchError, SizeMismatchError,
            UnsupportedDatatypeError. Nothing is sent to Imaris in those cases.
        """
        dataset = self.active_dataset()
        if dataset is None:
            logger.debug("set_data_volume skipped: no live Imaris dataset.")
            return

        channel, timepoint = self._to_zero_based(dataset, channel, timepoint)
        datatype = DataType.from_imaris_type(dataset.GetType())

        stack = np.asarray(stack)
        if stack.dtype != datatype.dtype:
            raise DatatypeMismatchError(
                f"Data type mismatch: dataset is {datatype.dtype}, array is {stack.dtype}.")

        if stack.ndim == 2:
            stack = stack[:, :, np.newaxis]
        elif stack.ndim == 4 and stack.shape[3] == 1:
            stack = stack[:, :, :, 0]

        expected = self._spatial_shape(dataset)
        if stack.ndim != 3 or tuple(stack.shape) != tuple(expected):
            raise SizeMismatchError(
                f"Data volume size mismatch: dataset is {tuple(expected)}, array is {stack.shape}.")

        flat = stack.flatten(order='F')
        getattr(dataset, datatype.write_accessor)(datatype.encode(flat), channel, timepoint)
