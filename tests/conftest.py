import numpy as np
import pytest

from drone.nav.context import PipelineContext
from drone.nav.mapping.depth_projection import CameraIntrinsics, DepthProjector
from drone.nav.mapping.distance_volume import DistanceVolume, VolumeParams
from drone.nav.seedPlanning import KinodynamicLimits
from drone.utils.utils import body_T_optical


def _fibonacci_sphere(center, radius, n=2000):
    i = np.arange(n) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / n)
    theta = np.pi * (1.0 + 5 ** 0.5) * i
    dirs = np.stack([np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)], axis=1)
    return np.asarray(center, dtype=np.float64)[None, :] + radius * dirs


@pytest.fixture
def sphere_cloud():
    """Points on a sphere surface: sphere_cloud(center, radius, n=2000) -> (n,3)."""
    return _fibonacci_sphere


@pytest.fixture
def small_params():
    return VolumeParams(resolution=0.1, pow=4, truncation_m=0.5)


@pytest.fixture
def small_volume(small_params):
    vol = DistanceVolume(small_params)
    vol.reset(np.zeros(3, dtype=np.int64))
    return vol


@pytest.fixture
def volume():
    vol = DistanceVolume(VolumeParams())
    vol.reset(np.zeros(3, dtype=np.int64))
    return vol


@pytest.fixture
def limits():
    return KinodynamicLimits(max_velocity=0.3, max_acceleration=0.5)


@pytest.fixture
def ctx():
    return PipelineContext(VolumeParams())


@pytest.fixture
def projector():
    return DepthProjector(intrinsics=CameraIntrinsics(), T_body_cam=body_T_optical())
