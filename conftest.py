"""
In-memory stand-ins for the Imaris ICE proxies used by the tests.
"""
import numpy as np
import pytest

from IceImarisConnector import IceImarisConnector


DTYPES = {
    "eTypeUInt8": np.uint8,
    "eTypeUInt16": np.uint16,
    "eTypeFloat": np.float32,
}


class FakeDataSet:
    """IDataSet holding its volumes in memory; records every accessor call."""

    def __init__(self, imaris_type="eTypeUInt16", sizes=(64, 64, 10, 3, 2),
                 extends=(0.0, 64.0, 0.0, 64.0, 0.0, 10.0)):
        self.calls = []
        self.delta_time = None
        self.Create(imaris_type, *sizes)
        self.extends = list(extends)

    def Create(self, imaris_type, x, y, z, c, t):
        self.imaris_type = str(imaris_type)
        self.sizes = (x, y, z, c, t)
        self.volumes = {}

    def GetType(self):
        return self.imaris_type

    def GetSizeX(self): return self.sizes[0]
    def GetSizeY(self): return self.sizes[1]
    def GetSizeZ(self): return self.sizes[2]
    def GetSizeC(self): return self.sizes[3]
    def GetSizeT(self): return self.sizes[4]

    def GetExtendMinX(self): return self.extends[0]
    def GetExtendMaxX(self): return self.extends[1]
    def GetExtendMinY(self): return self.extends[2]
    def GetExtendMaxY(self): return self.extends[3]
    def GetExtendMinZ(self): return self.extends[4]
    def GetExtendMaxZ(self): return self.extends[5]

    def SetExtendMinX(self, v): self.extends[0] = v
    def SetExtendMaxX(self, v): self.extends[1] = v
    def SetExtendMinY(self, v): self.extends[2] = v
    def SetExtendMaxY(self, v): self.extends[3] = v
    def SetExtendMinZ(self, v): self.extends[4] = v
    def SetExtendMaxZ(self, v): self.extends[5] = v

    def SetTimePointsDelta(self, delta):
        self.delta_time = delta

    def _volume(self, c, t):
        dtype = DTYPES[self.imaris_type]
        n = self.sizes[0] * self.sizes[1] * self.sizes[2]
        return self.volumes.get((c, t), np.zeros(n, dtype=dtype))

    def _store(self, name, c, t, flat):
        self.calls.append((name, c, t))
        self.volumes[(c, t)] = flat

    # ICE delivers bytes for byte sequences and signed ints for shorts
    def GetDataVolumeAs1DArrayBytes(self, c, t):
        self.calls.append(("GetBytes", c, t))
        return self._volume(c, t).tobytes()

    def GetDataVolumeAs1DArrayShorts(self, c, t):
        self.calls.append(("GetShorts", c, t))
        return self._volume(c, t).view(np.int16).tolist()

    def GetDataVolumeAs1DArrayFloats(self, c, t):
        self.calls.append(("GetFloats", c, t))
        return self._volume(c, t).tolist()

    def SetDataVolumeAs1DArrayBytes(self, data, c, t):
        self._store("SetBytes", c, t, np.frombuffer(bytes(data), dtype=np.uint8).copy())

    def SetDataVolumeAs1DArrayShorts(self, data, c, t):
        self._store("SetShorts", c, t, np.asarray(data, dtype=np.int16).view(np.uint16))

    def SetDataVolumeAs1DArrayFloats(self, data, c, t):
        self._store("SetFloats", c, t, np.asarray(data, dtype=np.float32))


class FakeItem:
    def __init__(self, kind, name="", children=()):
        self.kind = kind
        self.name = name
        self.children = list(children)

    def GetName(self):
        return self.name

    def GetNumberOfChildren(self):
        return len(self.children)

    def GetChild(self, i):
        return self.children[i]

    def AddChild(self, child, position):
        self.children.append(child)


class FakeSpots(FakeItem):
    def __init__(self, name="Spots", positions=(), indices_t=(), radii=()):
        super().__init__("Spots", name)
        self.Set(positions, indices_t, radii)
        self.color = None

    def Set(self, positions, indices_t, radii):
        self.positions = [list(p) for p in positions]
        self.indices_t = list(indices_t)
        self.radii = list(radii)

    def GetPositionsXYZ(self):
        return self.positions

    def GetIndicesT(self):
        return self.indices_t

    def GetRadii(self):
        return self.radii

    def SetName(self, name):
        self.name = name

    def SetColorRGBA(self, color):
        self.color = color


class FakeCamera:
    def __init__(self, quaternion=(0.0, 0.0, 0.0, 1.0)):
        self.quaternion = list(quaternion)

    def GetOrientationQuaternion(self):
        return self.quaternion


class FakeFactory:
    def __getattr__(self, name):
        if name.startswith("Is"):
            kind = "Dataset" if name == "IsDataSet" else name[2:]
            return lambda obj: isinstance(obj, FakeItem) and obj.kind == kind
        if name.startswith("To"):
            return lambda obj: obj
        raise AttributeError(name)

    def CreateSpots(self):
        return FakeSpots()

    def CreateDataSet(self):
        return FakeDataSet(sizes=(0, 0, 0, 0, 0))


class FakeApplication:
    def __init__(self, dataset=None, version="Imaris 9.5.1 [Jan 10 2020]"):
        self.dataset = dataset
        self.version = version
        self.alive = True
        self.visible = True
        self.quit_called = False
        self.factory = FakeFactory()
        self.scene = FakeItem("DataContainer", "Surpass Scene")
        self.selection = None
        self.camera = FakeCamera()

    def GetIds(self):
        if not self.alive:
            raise ConnectionRefusedError("Imaris is gone")
        return [0]

    def GetDataSet(self):
        return self.dataset

    def SetDataSet(self, dataset):
        self.dataset = dataset

    def GetFactory(self):
        return self.factory

    def GetSurpassScene(self):
        return self.scene

    def GetSurpassSelection(self):
        return self.selection

    def GetSurpassCamera(self):
        return self.camera

    def GetVersion(self):
        return self.version

    def SetVisible(self, visible):
        self.visible = visible

    def Quit(self):
        self.quit_called = True
        self.alive = False


class FakeServer:
    def __init__(self, ids):
        self.ids = list(ids)

    def GetNumberOfObjects(self):
        return len(self.ids)

    def GetObjectID(self, index):
        return self.ids[index]


class FakeImarisLib:
    def __init__(self, applications=None):
        self.applications = dict(applications or {})

    def GetServer(self):
        return FakeServer(self.applications.keys())

    def GetApplication(self, object_id):
        return self.applications.get(object_id)


@pytest.fixture
def dataset():
    return FakeDataSet()


@pytest.fixture
def application(dataset):
    return FakeApplication(dataset)


@pytest.fixture
def connector(application):
    return IceImarisConnector(application, indexing_start=1)
