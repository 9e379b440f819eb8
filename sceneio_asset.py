"""
sceneio Intermediate Asset Model
Format-neutral description of one asset: flat lists of meshes (with primitives and
accessors), materials, images, cameras, lights and nodes. Filled by the ASE converter
or the glTF decoder and consumed by the scene graph assembler.

Cross references are plain indices into the lists of the owning Asset.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

Vec3 = Tuple[float, float, float]
Color4 = Tuple[float, float, float, float]


class PrimitiveMode(IntEnum):
    """Topology of a primitive, numbered like glTF's mesh.primitive.mode"""
    POINTS = 0
    LINES = 1
    LINE_LOOP = 2
    LINE_STRIP = 3
    TRIANGLES = 4
    TRIANGLE_STRIP = 5
    TRIANGLE_FAN = 6


class Accessor:
    """Typed view over attribute or index data, always (count, num_components)"""

    def __init__(self, data):
        data = np.asarray(data)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        self.data = data

    @property
    def count(self) -> int:
        return self.data.shape[0]

    @property
    def num_components(self) -> int:
        return self.data.shape[1]

    def flat(self) -> np.ndarray:
        return self.data.reshape(-1)

    def __repr__(self) -> str:
        return f"Accessor(count={self.count}, components={self.num_components})"


@dataclass
class PrimitiveAttributes:
    position: Optional[Accessor] = None
    normal: Optional[Accessor] = None
    texcoord: List[Accessor] = field(default_factory=list)
    color: List[Accessor] = field(default_factory=list)


@dataclass
class PrimitiveBone:
    name: str
    # (vertex index, weight)
    weights: List[Tuple[int, float]] = field(default_factory=list)
    offset_matrix: np.ndarray = field(default_factory=lambda: np.eye(4))


@dataclass
class Primitive:
    mode: PrimitiveMode = PrimitiveMode.TRIANGLES
    attributes: PrimitiveAttributes = field(default_factory=PrimitiveAttributes)
    indices: Optional[Accessor] = None
    material: Optional[int] = None
    bones: List[PrimitiveBone] = field(default_factory=list)


@dataclass
class AssetMesh:
    name: str
    primitives: List[Primitive] = field(default_factory=list)


@dataclass
class Image:
    name: str = ''
    uri: Optional[str] = None
    mime_type: Optional[str] = None
    # inline payload (data URI, buffer view or GLB chunk)
    data: Optional[bytes] = None

    @property
    def is_embedded(self) -> bool:
        return self.data is not None


@dataclass
class TexProperty:
    """One material channel: a constant color, an image reference, or both"""
    color: Optional[Color4] = None
    image: Optional[int] = None
    texcoord: int = 0
    offset: Tuple[float, float] = (0.0, 0.0)
    scale: Tuple[float, float] = (1.0, 1.0)
    rotation: float = 0.0
    blend: float = 1.0


@dataclass
class AssetMaterial:
    name: str = ''
    ambient: TexProperty = field(default_factory=TexProperty)
    diffuse: TexProperty = field(default_factory=TexProperty)
    specular: TexProperty = field(default_factory=TexProperty)
    emissive: TexProperty = field(default_factory=TexProperty)
    # additional texture-only slots: 'normal', 'opacity', 'shininess', ...
    maps: Dict[str, TexProperty] = field(default_factory=dict)
    # opacity, 1.0 is fully opaque
    transparency: float = 1.0
    shininess: float = 0.0
    shininess_strength: float = 1.0
    two_sided: bool = False
    blend_transparent: bool = False


@dataclass
class AssetCamera:
    name: str = ''
    type: str = 'perspective'
    aspect_ratio: Optional[float] = None
    yfov: float = 0.0
    znear: float = 0.01
    zfar: Optional[float] = None
    xmag: float = 0.0
    ymag: float = 0.0


@dataclass
class AssetLight:
    name: str = ''
    # 'directional', 'point', 'spot' or 'ambient'
    type: str = 'point'
    color: Vec3 = (1.0, 1.0, 1.0)
    intensity: float = 1.0
    range: Optional[float] = None
    inner_cone_angle: Optional[float] = None
    outer_cone_angle: float = np.pi / 4.0
    falloff_exponent: Optional[float] = None


@dataclass
class AssetNode:
    name: str = ''
    children: List[int] = field(default_factory=list)
    # explicit local matrix (column vectors); wins over translation/rotation/scale
    matrix: Optional[np.ndarray] = None
    translation: Optional[Vec3] = None
    # quaternion x, y, z, w
    rotation: Optional[Tuple[float, float, float, float]] = None
    scale: Optional[Vec3] = None
    meshes: List[int] = field(default_factory=list)
    camera: Optional[int] = None
    light: Optional[int] = None
    inherit_position: Tuple[bool, bool, bool] = (True, True, True)
    inherit_rotation: Tuple[bool, bool, bool] = (True, True, True)
    inherit_scaling: Tuple[bool, bool, bool] = (True, True, True)


@dataclass
class NodeAnimation:
    node_name: str
    position_keys: List[Tuple[float, Vec3]] = field(default_factory=list)
    # quaternion x, y, z, w
    rotation_keys: List[Tuple[float, Tuple[float, float, float, float]]] = field(default_factory=list)
    scaling_keys: List[Tuple[float, Vec3]] = field(default_factory=list)
    position_interpolation: str = 'track'
    rotation_interpolation: str = 'track'
    scaling_interpolation: str = 'track'


@dataclass
class AssetAnimation:
    name: str = ''
    ticks_per_second: float = 1.0
    channels: List[NodeAnimation] = field(default_factory=list)

    @property
    def duration(self) -> float:
        times = [t for ch in self.channels
                 for keys in (ch.position_keys, ch.rotation_keys, ch.scaling_keys)
                 for t, _ in keys]
        return max(times) if times else 0.0


@dataclass
class Asset:
    meshes: List[AssetMesh] = field(default_factory=list)
    materials: List[AssetMaterial] = field(default_factory=list)
    images: List[Image] = field(default_factory=list)
    cameras: List[AssetCamera] = field(default_factory=list)
    lights: List[AssetLight] = field(default_factory=list)
    nodes: List[AssetNode] = field(default_factory=list)
    scene_roots: List[int] = field(default_factory=list)
    animations: List[AssetAnimation] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # glTF places the texture origin top-left, the scene graph bottom-left
    flip_uv_v: bool = True
