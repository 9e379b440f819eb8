"""
sceneio ASE Section Structures
Helper structures filled by the ASE section parser. They mirror the nesting of the
file (objects, materials, map slots, mesh sub-blocks) and are converted into the
format-neutral asset model afterwards.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from sceneio_config import MAX_TEXTURE_COORDS

Vec3 = Tuple[float, float, float]


class InterpolationKind(Enum):
    TRACK = 'track'
    BEZIER = 'bezier'
    TCB = 'tcb'


class ShadingMode(Enum):
    GOURAUD = 'gouraud'
    BLINN = 'blinn'
    PHONG = 'phong'
    FLAT = 'flat'
    WIRE = 'wire'


class NodeKind(Enum):
    MESH = 'mesh'
    LIGHT = 'light'
    CAMERA = 'camera'
    DUMMY = 'dummy'


class LightType(Enum):
    OMNI = 'omni'
    TARGET = 'target'
    FREE = 'free'
    DIRECTIONAL = 'directional'


class CameraType(Enum):
    FREE = 'free'
    TARGET = 'target'


class Face:
    """One triangle of an ASE mesh"""
    def __init__(self):
        self.face_index = 0
        self.indices = [0, 0, 0]
        self.uv_indices = [[0, 0, 0] for _ in range(MAX_TEXTURE_COORDS)]
        self.color_indices = [0, 0, 0]
        self.smoothing_groups = 0
        # None means no *MESH_MTLID override was given
        self.material: Optional[int] = None


class Bone:
    def __init__(self, name: str = 'UNNAMED'):
        self.name = name


class BoneVertex:
    def __init__(self):
        self.weights: List[Tuple[int, float]] = []


class Animation:
    """Keyframe tracks of one node; times are tick indices"""
    def __init__(self):
        self.position_kind = InterpolationKind.TRACK
        self.rotation_kind = InterpolationKind.TRACK
        self.scaling_kind = InterpolationKind.TRACK
        self.position_keys: List[Tuple[float, Vec3]] = []
        # (axis_x, axis_y, axis_z, angle)
        self.rotation_keys: List[Tuple[float, Tuple[float, float, float, float]]] = []
        self.scaling_keys: List[Tuple[float, Vec3]] = []

    def is_empty(self) -> bool:
        return not (self.position_keys or self.rotation_keys or self.scaling_keys)


class Texture:
    """A *MAP_XXX slot of a material"""
    def __init__(self):
        self.path = ''
        self.offset_u = 0.0
        self.offset_v = 0.0
        self.scale_u = 1.0
        self.scale_v = 1.0
        self.rotation = 0.0
        self.blend = 1.0


MAP_SLOTS = ('diffuse', 'ambient', 'specular', 'opacity', 'emissive', 'bump', 'shininess')


class Material:
    def __init__(self, name: str = 'INVALID'):
        self.name = name
        self.ambient: Vec3 = (0.0, 0.0, 0.0)
        self.diffuse: Vec3 = (0.6, 0.6, 0.6)
        self.specular: Vec3 = (0.0, 0.0, 0.0)
        self.emissive: Vec3 = (0.0, 0.0, 0.0)
        self.shading = ShadingMode.GOURAUD
        # opacity, i.e. 1 - *MATERIAL_TRANSPARENCY
        self.transparency = 1.0
        self.shininess = 0.0
        self.shininess_strength = 1.0
        self.two_sided = False
        self.maps: Dict[str, Texture] = {slot: Texture() for slot in MAP_SLOTS}
        self.submaterials: List['Material'] = []


class BaseNode:
    """Common part of all *XXXOBJECT blocks"""
    kind = NodeKind.DUMMY

    def __init__(self, name: str = 'UNNAMED'):
        self.name = name
        self.parent = ''
        # column-vector form, filled from the *TM_ROWn rows
        self.transform = np.eye(4)
        self.inherit_position = (True, True, True)
        self.inherit_rotation = (True, True, True)
        self.inherit_scaling = (True, True, True)
        self.target_position: Optional[Vec3] = None
        self.anim = Animation()
        self.target_anim = Animation()

    def set_transform_row(self, row: int, values: Vec3) -> None:
        # the file stores row vectors, so each row becomes a column here
        self.transform[0:3, row] = values

    @property
    def is_target(self) -> bool:
        return False


class Dummy(BaseNode):
    kind = NodeKind.DUMMY


class Light(BaseNode):
    kind = NodeKind.LIGHT

    def __init__(self, name: str = 'UNNAMED'):
        super().__init__(name)
        self.light_type = LightType.OMNI
        self.color: Vec3 = (1.0, 1.0, 1.0)
        self.intensity = 1.0
        self.hotspot = 45.0
        # None until *LIGHT_FALLOFF is read
        self.falloff: Optional[float] = None

    @property
    def is_target(self) -> bool:
        return self.light_type == LightType.TARGET


class Camera(BaseNode):
    kind = NodeKind.CAMERA

    def __init__(self, name: str = 'UNNAMED'):
        super().__init__(name)
        self.camera_type = CameraType.FREE
        self.fov = 0.75
        self.near = 0.1
        self.far = 1000.0

    @property
    def is_target(self) -> bool:
        return self.camera_type == CameraType.TARGET


class Mesh(BaseNode):
    kind = NodeKind.MESH

    def __init__(self, name: str = 'UNNAMED'):
        super().__init__(name)
        self.positions: List[Vec3] = []
        self.faces: List[Face] = []
        # three normals per face, accumulated from face and vertex normals
        self.normals: List[List[float]] = []
        self.tex_coords: List[List[Vec3]] = [[] for _ in range(MAX_TEXTURE_COORDS)]
        self.num_uv_components = [2] * MAX_TEXTURE_COORDS
        self.vertex_colors: List[Tuple[float, float, float, float]] = []
        self.bones: List[Bone] = []
        self.bone_vertices: List[BoneVertex] = []
        self.material_index = 0
        self._bone_registry: Dict[str, int] = {}

    def bone_index(self, name: str) -> int:
        """Index of the named bone, creating it on first sight.

        Names may also have been assigned by index through *MESH_BONE_LIST, so a
        registry miss falls back to scanning the bone list before creating a bone.
        """
        index = self._bone_registry.get(name)
        if index is not None and index < len(self.bones) and self.bones[index].name == name:
            return index
        index = next((i for i, bone in enumerate(self.bones) if bone.name == name), None)
        if index is None:
            self.bones.append(Bone(name))
            index = len(self.bones) - 1
        self._bone_registry[name] = index
        return index
