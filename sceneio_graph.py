"""
sceneio Unified Scene Graph
Output of the assembler: flat mesh/material/camera/light/texture arrays plus a single
node tree. Nodes own their children; every other cross reference is an index.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

Color4 = Tuple[float, float, float, float]


@dataclass
class SceneBone:
    name: str
    offset_matrix: np.ndarray
    weights: List[Tuple[int, float]] = field(default_factory=list)


@dataclass
class SceneMesh:
    name: str
    vertices: np.ndarray
    # (num_faces, arity); arity 1 = points, 2 = lines, 3 = triangles
    faces: np.ndarray
    normals: Optional[np.ndarray] = None
    uvs: List[np.ndarray] = field(default_factory=list)
    colors: List[np.ndarray] = field(default_factory=list)
    material_index: int = 0
    bones: List[SceneBone] = field(default_factory=list)

    @property
    def face_arity(self) -> int:
        return self.faces.shape[1] if self.faces.ndim == 2 else 0


@dataclass
class TextureSlot:
    """Texture reference of a material channel, either '*<index>' or a path"""
    path: str
    uv_index: int = 0
    offset: Tuple[float, float] = (0.0, 0.0)
    scale: Tuple[float, float] = (1.0, 1.0)
    rotation: float = 0.0
    blend: float = 1.0


@dataclass
class SceneMaterial:
    name: str
    ambient: Optional[Color4] = None
    diffuse: Optional[Color4] = None
    specular: Optional[Color4] = None
    emissive: Optional[Color4] = None
    opacity: float = 1.0
    shininess: float = 0.0
    shininess_strength: float = 1.0
    two_sided: bool = False
    blend_transparent: bool = False
    textures: Dict[str, TextureSlot] = field(default_factory=dict)


@dataclass
class SceneTexture:
    data: bytes
    format_hint: str = ''
    name: str = ''


@dataclass
class SceneCamera:
    name: str
    horizontal_fov: float = 0.0
    aspect: float = 0.0
    clip_near: float = 0.1
    clip_far: float = 1000.0
    orthographic: bool = False


@dataclass
class SceneLight:
    name: str
    type: str
    color: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    intensity: float = 1.0
    range: Optional[float] = None
    inner_cone_angle: float = 0.0
    outer_cone_angle: float = 0.0


@dataclass
class SceneNode:
    name: str
    transform: np.ndarray = field(default_factory=lambda: np.eye(4))
    children: List['SceneNode'] = field(default_factory=list)
    meshes: List[int] = field(default_factory=list)

    def walk(self) -> Iterator['SceneNode']:
        """Depth-first iteration over this node and all descendants"""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, name: str) -> Optional['SceneNode']:
        return next((node for node in self.walk() if node.name == name), None)


@dataclass
class SceneNodeAnimation:
    node_name: str
    position_keys: List[Tuple[float, Tuple[float, float, float]]] = field(default_factory=list)
    # quaternion x, y, z, w
    rotation_keys: List[Tuple[float, Tuple[float, float, float, float]]] = field(default_factory=list)
    scaling_keys: List[Tuple[float, Tuple[float, float, float]]] = field(default_factory=list)
    position_interpolation: str = 'track'
    rotation_interpolation: str = 'track'
    scaling_interpolation: str = 'track'


@dataclass
class SceneAnimation:
    name: str
    duration: float
    ticks_per_second: float
    channels: List[SceneNodeAnimation] = field(default_factory=list)


@dataclass
class Scene:
    root: SceneNode
    meshes: List[SceneMesh] = field(default_factory=list)
    materials: List[SceneMaterial] = field(default_factory=list)
    cameras: List[SceneCamera] = field(default_factory=list)
    lights: List[SceneLight] = field(default_factory=list)
    textures: List[SceneTexture] = field(default_factory=list)
    animations: List[SceneAnimation] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # set when the import produced no meshes
    incomplete: bool = False

    def summary(self) -> str:
        nodes = sum(1 for _ in self.root.walk())
        faces = sum(len(m.faces) for m in self.meshes)
        lines = [
            f"Nodes:      {nodes}",
            f"Meshes:     {len(self.meshes)} ({faces} faces)",
            f"Materials:  {len(self.materials)}",
            f"Textures:   {len(self.textures)}",
            f"Cameras:    {len(self.cameras)}",
            f"Lights:     {len(self.lights)}",
            f"Animations: {len(self.animations)}",
        ]
        if self.incomplete:
            lines.append("Scene is incomplete (no meshes)")
        return "\n".join(lines)
