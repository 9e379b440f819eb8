"""
sceneio ASE Converter
Turns the section structures collected by AseParser into the intermediate Asset.

Materials and their submaterials are flattened into one list. Each ASE mesh becomes
one asset mesh with a TRIANGLES primitive per material, using unshared per-corner
vertices so that every corner can carry its own normal, UVs and color. Node
transforms in the file are world matrices; nodes get local matrices relative to their
resolved parent.
"""

import os
from typing import Dict, List, Optional, Tuple

import numpy as np
import trimesh

from sceneio_ase_parser import AseParser
from sceneio_ase_types import (
    Animation, BaseNode, Camera, Light, LightType, Material, Mesh, Texture,
)
from sceneio_asset import (
    Accessor, Asset, AssetAnimation, AssetCamera, AssetLight, AssetMaterial, AssetMesh,
    AssetNode, Image, NodeAnimation, Primitive, PrimitiveAttributes, PrimitiveBone,
    PrimitiveMode, TexProperty,
)
from sceneio_config import ImportSettings
from sceneio_diagnostics import DiagnosticSink, ErrorKind

# asset map slot for each ASE map slot not covered by a color channel
_EXTRA_MAPS = {'bump': 'normal', 'opacity': 'opacity', 'shininess': 'shininess'}

_LIGHT_TYPES = {
    LightType.OMNI: 'point',
    LightType.TARGET: 'spot',
    LightType.FREE: 'spot',
    LightType.DIRECTIONAL: 'directional',
}


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(vectors, axis=1)
    lengths[lengths == 0.0] = 1.0
    return vectors / lengths[:, None]


def smoothing_group_normals(positions: np.ndarray, corners: np.ndarray,
                            groups: List[int]) -> np.ndarray:
    """Per-corner normals built from smoothing groups.

    positions: (V, 3) vertex positions; corners: (F, 3) vertex indices per face;
    groups: smoothing mask per face. A corner averages the area-weighted normals of
    all faces around its vertex that share a smoothing group with its own face.
    Faces without any group are shaded flat.
    """
    tri = positions[corners]
    face_normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])

    faces_at_vertex: Dict[int, List[int]] = {}
    for f, face in enumerate(corners):
        for v in face:
            faces_at_vertex.setdefault(int(v), []).append(f)

    normals = np.zeros((len(corners) * 3, 3))
    for f, face in enumerate(corners):
        mask = groups[f]
        for k, v in enumerate(face):
            if mask == 0:
                normals[f * 3 + k] = face_normals[f]
                continue
            for g in faces_at_vertex[int(v)]:
                if groups[g] & mask:
                    normals[f * 3 + k] += face_normals[g]
    return _normalize_rows(normals)


class AseConverter:
    def __init__(self, parser: AseParser, sink: Optional[DiagnosticSink] = None,
                 settings: Optional[ImportSettings] = None):
        self.parser = parser
        self.sink = sink if sink is not None else parser.sink
        self.settings = settings if settings is not None else ImportSettings()
        self.asset = Asset(flip_uv_v=False)
        self.image_by_path: Dict[str, int] = {}
        # per ASE material: (asset index of the material, asset indices of its submaterials)
        self.material_slots: List[Tuple[int, List[int]]] = []
        self._reported = set()

    def warn(self, message: str, kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
        self.sink.warn(None, message, kind)

    def warn_once(self, message: str, kind: ErrorKind) -> None:
        if message not in self._reported:
            self._reported.add(message)
            self.warn(message, kind)

    def inverse(self, node: BaseNode) -> np.ndarray:
        try:
            return np.linalg.inv(node.transform)
        except np.linalg.LinAlgError:
            self.warn_once(f"Node '{node.name}' has a singular transform, using identity",
                           ErrorKind.MALFORMED_FIELD)
            return np.eye(4)

    def convert(self) -> Asset:
        self.convert_materials()
        nodes = list(self.parser.meshes) + list(self.parser.dummies) + \
            list(self.parser.lights) + list(self.parser.cameras)
        self.convert_nodes(nodes)
        self.convert_animation(nodes)
        self.asset.metadata = self._metadata()
        return self.asset

    def _metadata(self) -> dict:
        parser = self.parser
        metadata = {
            'SourceAsset_Format': 'ASE',
            'SourceAsset_FormatVersion': str(parser.file_format),
            'FirstFrame': parser.first_frame,
            'LastFrame': parser.last_frame,
        }
        if parser.comments:
            metadata['Comments'] = list(parser.comments)
        if parser.background_color is not None:
            metadata['BackgroundColor'] = parser.background_color
        if parser.ambient_color is not None:
            metadata['AmbientColor'] = parser.ambient_color
        return metadata

    # ------------------------------------------------------------------
    # materials

    def _image_index(self, path: str) -> int:
        index = self.image_by_path.get(path)
        if index is None:
            index = len(self.asset.images)
            self.asset.images.append(Image(name=os.path.basename(path.replace('\\', '/')),
                                           uri=path))
            self.image_by_path[path] = index
        return index

    def _tex_property(self, color, tex: Texture) -> TexProperty:
        prop = TexProperty(
            color=None if color is None else (color[0], color[1], color[2], 1.0),
            offset=(tex.offset_u, tex.offset_v),
            scale=(tex.scale_u, tex.scale_v),
            rotation=tex.rotation,
            blend=tex.blend,
        )
        if tex.path:
            prop.image = self._image_index(tex.path)
        return prop

    def _convert_material(self, mat: Material) -> int:
        out = AssetMaterial(
            name=mat.name,
            ambient=self._tex_property(mat.ambient, mat.maps['ambient']),
            diffuse=self._tex_property(mat.diffuse, mat.maps['diffuse']),
            specular=self._tex_property(mat.specular, mat.maps['specular']),
            emissive=self._tex_property(mat.emissive, mat.maps['emissive']),
            transparency=mat.transparency,
            shininess=mat.shininess,
            shininess_strength=mat.shininess_strength,
            two_sided=mat.two_sided,
            blend_transparent=mat.transparency < 1.0,
        )
        for slot, target in _EXTRA_MAPS.items():
            tex = mat.maps[slot]
            if tex.path:
                out.maps[target] = self._tex_property(None, tex)
        self.asset.materials.append(out)
        return len(self.asset.materials) - 1

    def convert_materials(self) -> None:
        for mat in self.parser.materials:
            base = self._convert_material(mat)
            subs = [self._convert_material(sub) for sub in mat.submaterials]
            self.material_slots.append((base, subs))

    def face_material(self, mesh: Mesh, face_material: Optional[int]) -> Optional[int]:
        """Asset material of a face: the mesh's material, or one of its submaterials"""
        if not self.material_slots:
            return None
        index = mesh.material_index
        if index >= len(self.material_slots):
            self.warn_once(f"Mesh '{mesh.name}': material index {index} is out of range",
                           ErrorKind.OUT_OF_RANGE_INDEX)
            index = len(self.material_slots) - 1
        base, subs = self.material_slots[index]
        if not subs:
            return base
        sub = face_material or 0
        if sub >= len(subs):
            self.warn_once(f"Mesh '{mesh.name}': submaterial index {sub} is out of range",
                           ErrorKind.OUT_OF_RANGE_INDEX)
            sub = len(subs) - 1
        return subs[sub]

    # ------------------------------------------------------------------
    # geometry

    def _gather(self, source: np.ndarray, indices: np.ndarray, what: str,
                mesh: Mesh) -> np.ndarray:
        """source[indices] with out-of-range indices replaced by zero rows"""
        bad = indices >= len(source)
        if bad.any():
            self.warn(f"Mesh '{mesh.name}': {int(bad.sum())} {what} indices are out of range",
                      ErrorKind.OUT_OF_RANGE_INDEX)
        if len(source) == 0:
            return np.zeros((len(indices), source.shape[1] if source.ndim == 2 else 3))
        return np.where(bad[:, None], 0.0, source[np.where(bad, 0, indices)])

    def convert_mesh(self, mesh: Mesh) -> Optional[AssetMesh]:
        faces = list(mesh.faces)
        if not faces:
            self.warn(f"Mesh '{mesh.name}' has no faces", ErrorKind.MALFORMED_FIELD)
            return None

        # the file stores world space positions
        inverse = self.inverse(mesh)
        positions = np.asarray(mesh.positions, dtype=np.float64).reshape(-1, 3)
        if len(positions):
            positions = trimesh.transformations.transform_points(positions, inverse)

        corners = np.array([f.indices for f in faces], dtype=np.int64)
        bad = corners >= len(positions)
        if bad.any():
            self.warn(f"Mesh '{mesh.name}': face references vertex outside of "
                      f"{len(positions)} vertices", ErrorKind.OUT_OF_RANGE_INDEX)
            corners = np.where(bad, 0, corners)
            if not len(positions):
                positions = np.zeros((1, 3))

        if len(mesh.normals) == len(faces) * 3:
            normals = np.asarray(mesh.normals, dtype=np.float64).reshape(-1, 3)
            # normals follow the inverse transpose of the inverse node transform
            normals = _normalize_rows(normals @ mesh.transform[:3, :3])
        elif self.settings.generate_smooth_normals:
            normals = smoothing_group_normals(positions, corners,
                                              [f.smoothing_groups for f in faces])
        else:
            normals = None

        groups: Dict[Optional[int], List[int]] = {}
        for f, face in enumerate(faces):
            groups.setdefault(self.face_material(mesh, face.material), []).append(f)

        out = AssetMesh(name=mesh.name)
        for material, face_ids in groups.items():
            out.primitives.append(self._build_primitive(mesh, faces, face_ids, positions,
                                                        corners, normals, material))
        return out

    def _build_primitive(self, mesh: Mesh, faces, face_ids: List[int], positions: np.ndarray,
                         corners: np.ndarray, normals: Optional[np.ndarray],
                         material: Optional[int]) -> Primitive:
        ids = np.asarray(face_ids, dtype=np.int64)
        corner_ids = (ids[:, None] * 3 + np.arange(3)).reshape(-1)
        vertex_ids = corners[ids].reshape(-1)

        attrs = PrimitiveAttributes(position=Accessor(positions[vertex_ids]))
        if normals is not None:
            attrs.normal = Accessor(normals[corner_ids])

        for ch in range(self.parser.max_texture_coords):
            coords = mesh.tex_coords[ch]
            if not coords:
                continue
            source = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
            uv_ids = np.array([faces[f].uv_indices[ch] for f in face_ids],
                              dtype=np.int64).reshape(-1)
            uv = self._gather(source, uv_ids, 'texture coordinate', mesh)
            attrs.texcoord.append(Accessor(uv[:, :mesh.num_uv_components[ch]]))

        if mesh.vertex_colors:
            source = np.asarray(mesh.vertex_colors, dtype=np.float64).reshape(-1, 4)
            color_ids = np.array([faces[f].color_indices for f in face_ids],
                                 dtype=np.int64).reshape(-1)
            attrs.color.append(Accessor(self._gather(source, color_ids, 'vertex color', mesh)))

        return Primitive(mode=PrimitiveMode.TRIANGLES, attributes=attrs, material=material,
                         bones=self._build_bones(mesh, vertex_ids))

    def _build_bones(self, mesh: Mesh, vertex_ids: np.ndarray) -> List[PrimitiveBone]:
        if not mesh.bones or not mesh.bone_vertices:
            return []
        weights: List[List[Tuple[int, float]]] = [[] for _ in mesh.bones]
        reported = False
        for corner, v in enumerate(vertex_ids):
            if v >= len(mesh.bone_vertices):
                continue
            for bone, weight in mesh.bone_vertices[v].weights:
                if not 0 <= bone < len(mesh.bones):
                    if not reported:
                        self.warn(f"Mesh '{mesh.name}': bone index {bone} is out of range",
                                  ErrorKind.OUT_OF_RANGE_INDEX)
                        reported = True
                    continue
                weights[bone].append((corner, weight))
        return [PrimitiveBone(name=mesh.bones[b].name, weights=w)
                for b, w in enumerate(weights) if w]

    # ------------------------------------------------------------------
    # nodes

    def convert_nodes(self, nodes: List[BaseNode]) -> None:
        index_by_name: Dict[str, int] = {}
        for i, node in enumerate(nodes):
            index_by_name.setdefault(node.name, i)

        parents: List[Optional[int]] = []
        for node in nodes:
            parent = None
            if node.parent:
                parent = index_by_name.get(node.parent)
                if parent is None or nodes[parent] is node:
                    self.warn(f"Unable to find parent node '{node.parent}' of '{node.name}', "
                              "attaching it to the root", ErrorKind.UNRESOLVED_REFERENCE)
                    parent = None
            parents.append(parent)

        for i, node in enumerate(nodes):
            parent = parents[i]
            parent_inverse = self.inverse(nodes[parent]) if parent is not None else np.eye(4)
            out = AssetNode(
                name=node.name,
                matrix=parent_inverse @ node.transform,
                inherit_position=node.inherit_position,
                inherit_rotation=node.inherit_rotation,
                inherit_scaling=node.inherit_scaling,
            )
            if isinstance(node, Mesh):
                mesh = self.convert_mesh(node)
                if mesh is not None:
                    out.meshes.append(len(self.asset.meshes))
                    self.asset.meshes.append(mesh)
            elif isinstance(node, Camera):
                out.camera = len(self.asset.cameras)
                self.asset.cameras.append(AssetCamera(
                    name=node.name, yfov=node.fov, znear=node.near, zfar=node.far))
            elif isinstance(node, Light):
                out.light = len(self.asset.lights)
                # the outer cone never sits inside the hotspot
                falloff = node.falloff if node.falloff is not None else node.hotspot
                self.asset.lights.append(AssetLight(
                    name=node.name, type=_LIGHT_TYPES[node.light_type], color=node.color,
                    intensity=node.intensity, inner_cone_angle=np.radians(node.hotspot),
                    outer_cone_angle=np.radians(max(falloff, node.hotspot))))
            self.asset.nodes.append(out)

        # hierarchy, once every node has its final index
        for i, parent in enumerate(parents):
            if parent is None:
                self.asset.scene_roots.append(i)
            else:
                self.asset.nodes[parent].children.append(i)

        for i, node in enumerate(nodes):
            if node.is_target and node.target_position is not None:
                self._add_target_node(node, parents[i], nodes)

        for i in self._cycle_members(parents):
            self.warn(f"Node '{nodes[i].name}' is part of a parent cycle, attaching it "
                      "to the root", ErrorKind.UNRESOLVED_REFERENCE)
            parent = parents[i]
            self.asset.nodes[parent].children.remove(i)
            self.asset.scene_roots.append(i)

    @staticmethod
    def _cycle_members(parents: List[Optional[int]]) -> List[int]:
        """One node of every parent cycle, so that the cycle can be broken there"""
        state = [0] * len(parents)
        members = []
        for start in range(len(parents)):
            path = []
            i = start
            while i is not None and state[i] == 0:
                state[i] = 1
                path.append(i)
                i = parents[i]
            if i is not None and state[i] == 1:
                members.append(i)
            for j in path:
                state[j] = 2
        return members

    def _add_target_node(self, node: BaseNode, parent: Optional[int],
                         nodes: List[BaseNode]) -> None:
        """Sibling node '<name>.Target' placed at the aim point of a camera or spot light"""
        parent_inverse = self.inverse(nodes[parent]) if parent is not None else np.eye(4)
        world = trimesh.transformations.translation_matrix(node.target_position)
        index = len(self.asset.nodes)
        self.asset.nodes.append(AssetNode(name=f"{node.name}.Target",
                                          matrix=parent_inverse @ world))
        if parent is None:
            self.asset.scene_roots.append(index)
        else:
            self.asset.nodes[parent].children.append(index)

    # ------------------------------------------------------------------
    # animation

    def convert_animation(self, nodes: List[BaseNode]) -> None:
        channels = []
        for node in nodes:
            if not node.anim.is_empty():
                channels.append(self._channel(node.name, node.anim))
            if node.is_target and not node.target_anim.is_empty():
                channels.append(self._channel(f"{node.name}.Target", node.target_anim))
        if not channels:
            return
        ticks = self.parser.frame_speed * self.parser.ticks_per_frame
        self.asset.animations.append(AssetAnimation(
            name='ASE animation', ticks_per_second=float(ticks or 1), channels=channels))

    @staticmethod
    def _channel(name: str, anim: Animation) -> NodeAnimation:
        out = NodeAnimation(node_name=name)
        out.position_keys = [(t, tuple(v)) for t, v in anim.position_keys]
        out.scaling_keys = [(t, tuple(v)) for t, v in anim.scaling_keys]
        # every rotation key is relative to the previous one
        current = np.array([1.0, 0.0, 0.0, 0.0])
        for t, (ax, ay, az, angle) in anim.rotation_keys:
            axis = np.array([ax, ay, az], dtype=np.float64)
            if np.linalg.norm(axis) == 0.0:
                step = np.array([1.0, 0.0, 0.0, 0.0])
            else:
                step = trimesh.transformations.quaternion_about_axis(angle, axis)
            current = trimesh.transformations.quaternion_multiply(current, step)
            current = current / np.linalg.norm(current)
            w, x, y, z = current
            out.rotation_keys.append((t, (float(x), float(y), float(z), float(w))))
        out.position_interpolation = anim.position_kind.value
        out.rotation_interpolation = anim.rotation_kind.value
        out.scaling_interpolation = anim.scaling_kind.value
        return out


def convert_ase(parser: AseParser, sink: Optional[DiagnosticSink] = None,
                settings: Optional[ImportSettings] = None) -> Asset:
    return AseConverter(parser, sink, settings).convert()
