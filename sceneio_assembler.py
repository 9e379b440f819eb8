"""
sceneio Scene Graph Assembler
Turns an intermediate Asset into the unified Scene.

Every source primitive becomes one output mesh with a single face arity (points,
lines or triangles). Node mesh references address source meshes, so they are expanded
through an offset table into the range of output meshes built from that source mesh.
Cameras and lights are imported before the node tree because nodes write their names
back onto them.
"""

import io
from typing import List, Optional, Set

import numpy as np
import trimesh
from PIL import Image, UnidentifiedImageError

from sceneio_asset import Asset, AssetMaterial, AssetNode, Primitive, PrimitiveMode, TexProperty
from sceneio_config import MAX_COLOR_SETS, MAX_TEXTURE_COORDS
from sceneio_diagnostics import DiagnosticSink, ErrorKind
from sceneio_graph import (
    Scene, SceneAnimation, SceneBone, SceneCamera, SceneLight, SceneMaterial, SceneMesh,
    SceneNode, SceneNodeAnimation, SceneTexture, TextureSlot,
)

# Material texture paths of the form '*<n>' refer to Scene.textures[n]
EMBEDDED_TEXTURE_SIGIL = '*'
DEFAULT_MATERIAL_NAME = 'DefaultMaterial'
ROOT_NODE_NAME = 'ROOT'
NOT_EMBEDDED = -1

_ARITY = {
    PrimitiveMode.POINTS: 1,
    PrimitiveMode.LINES: 2,
    PrimitiveMode.LINE_LOOP: 2,
    PrimitiveMode.LINE_STRIP: 2,
    PrimitiveMode.TRIANGLES: 3,
    PrimitiveMode.TRIANGLE_STRIP: 3,
    PrimitiveMode.TRIANGLE_FAN: 3,
}


def _warn(sink: Optional[DiagnosticSink], message: str,
          kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
    if sink is not None:
        sink.warn(None, message, kind)


def build_faces(mode: PrimitiveMode, indices, sink: Optional[DiagnosticSink] = None) -> np.ndarray:
    """Decompose an index sequence into faces according to the topology mode.

    Returns an int64 array of shape (num_faces, arity). Trailing indices that do not
    fill a whole line or triangle are dropped with a warning.
    """
    mode = PrimitiveMode(mode)
    arity = _ARITY[mode]
    idx = np.asarray(indices, dtype=np.int64).reshape(-1)
    count = len(idx)
    empty = np.zeros((0, arity), dtype=np.int64)

    if mode == PrimitiveMode.POINTS:
        return idx.reshape(-1, 1)

    if mode in (PrimitiveMode.LINES, PrimitiveMode.TRIANGLES):
        num_faces = count // arity
        if num_faces * arity != count:
            _warn(sink, f"The number of vertices was not compatible with the {mode.name} mode. "
                        "Some vertices were dropped.")
        return idx[:num_faces * arity].reshape(-1, arity)

    if mode in (PrimitiveMode.LINE_STRIP, PrimitiveMode.LINE_LOOP):
        if count < 2:
            _warn(sink, f"{mode.name} needs at least 2 indices, got {count}")
            return empty
        faces = np.stack([idx[:-1], idx[1:]], axis=1)
        if mode == PrimitiveMode.LINE_LOOP:
            faces = np.vstack([faces, [[idx[-1], idx[0]]]])
        return faces

    if count < 3:
        _warn(sink, f"{mode.name} needs at least 3 indices, got {count}")
        return empty
    if mode == PrimitiveMode.TRIANGLE_STRIP:
        return np.stack([idx[:-2], idx[1:-1], idx[2:]], axis=1)
    # fan: every face shares the first index
    return np.stack([np.full(count - 2, idx[0]), idx[1:-1], idx[2:]], axis=1)


def faces_in_range(faces: np.ndarray, num_vertices: int) -> bool:
    return faces.size == 0 or (faces.min() >= 0 and faces.max() < num_vertices)


def compose_transform(node: AssetNode) -> np.ndarray:
    """Local matrix of a node: the explicit matrix, else translation * scale * rotation"""
    if node.matrix is not None:
        return np.array(node.matrix, dtype=np.float64).reshape(4, 4)
    matrix = np.eye(4)
    if node.translation is not None:
        matrix = matrix @ trimesh.transformations.translation_matrix(node.translation)
    if node.scale is not None:
        matrix = matrix @ np.diag([node.scale[0], node.scale[1], node.scale[2], 1.0])
    if node.rotation is not None:
        x, y, z, w = node.rotation
        matrix = matrix @ trimesh.transformations.quaternion_matrix([w, x, y, z])
    return matrix


def format_hint(mime_type: Optional[str], data: Optional[bytes] = None) -> str:
    """Three letter file format hint for an embedded texture.

    Taken from the MIME subtype ('image/jpeg' -> 'jpg'); without a MIME type the
    payload itself is identified with Pillow.
    """
    if mime_type:
        ext = mime_type.split('/', 1)[-1]
        if ext.startswith('jpeg'):
            ext = 'jpg'
        return ext[:3]
    if not data:
        return ''
    try:
        with Image.open(io.BytesIO(data)) as img:
            ext = (img.format or '').lower()
    except (UnidentifiedImageError, OSError):
        return ''
    if ext == 'jpeg':
        ext = 'jpg'
    return ext[:3]


class SceneAssembler:
    """Builds one Scene from one Asset. Instances are single use."""

    def __init__(self, asset: Asset, sink: Optional[DiagnosticSink] = None):
        self.asset = asset
        self.sink = sink if sink is not None else DiagnosticSink()
        self.scene = Scene(root=SceneNode(ROOT_NODE_NAME))
        self.mesh_offsets: List[int] = []
        self.embedded_indices: List[int] = []

    def warn(self, message: str, kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
        self.sink.warn(None, message, kind)

    def assemble(self) -> Scene:
        self.import_embedded_textures()
        self.import_materials()
        self.import_meshes()
        self.import_cameras()
        self.import_lights()
        self.import_nodes()
        self.import_animations()
        self.scene.metadata = dict(self.asset.metadata)
        if not self.scene.meshes:
            self.scene.incomplete = True
        return self.scene

    # ------------------------------------------------------------------

    def import_embedded_textures(self) -> None:
        self.embedded_indices = [NOT_EMBEDDED] * len(self.asset.images)
        for i, image in enumerate(self.asset.images):
            if not image.is_embedded:
                continue
            self.embedded_indices[i] = len(self.scene.textures)
            self.scene.textures.append(SceneTexture(
                data=image.data,
                format_hint=format_hint(image.mime_type, image.data),
                name=image.name,
            ))

    def texture_reference(self, image_index: int) -> Optional[str]:
        """Path stored on a material slot: the embedded sigil form or the image URI"""
        if not 0 <= image_index < len(self.asset.images):
            self.warn(f"Material references missing image {image_index}",
                      ErrorKind.OUT_OF_RANGE_INDEX)
            return None
        embedded = self.embedded_indices[image_index]
        if embedded != NOT_EMBEDDED:
            return f"{EMBEDDED_TEXTURE_SIGIL}{embedded}"
        return self.asset.images[image_index].uri or None

    def _texture_slot(self, prop: TexProperty) -> Optional[TextureSlot]:
        if prop.image is None:
            return None
        path = self.texture_reference(prop.image)
        if path is None:
            return None
        return TextureSlot(path=path, uv_index=prop.texcoord, offset=prop.offset,
                           scale=prop.scale, rotation=prop.rotation, blend=prop.blend)

    def import_materials(self) -> None:
        for mat in self.asset.materials:
            self.scene.materials.append(self._convert_material(mat))
        # meshes always have a material to point at
        if not self.scene.materials:
            self.scene.materials.append(SceneMaterial(DEFAULT_MATERIAL_NAME))

    def _convert_material(self, mat: AssetMaterial) -> SceneMaterial:
        out = SceneMaterial(
            name=mat.name,
            ambient=mat.ambient.color,
            diffuse=mat.diffuse.color,
            specular=mat.specular.color,
            emissive=mat.emissive.color,
            opacity=mat.transparency if mat.blend_transparent else 1.0,
            shininess=mat.shininess,
            shininess_strength=mat.shininess_strength,
            two_sided=mat.two_sided,
            blend_transparent=mat.blend_transparent,
        )
        channels = {'ambient': mat.ambient, 'diffuse': mat.diffuse,
                    'specular': mat.specular, 'emissive': mat.emissive}
        channels.update(mat.maps)
        for slot, prop in channels.items():
            tex = self._texture_slot(prop)
            if tex is not None:
                out.textures[slot] = tex
        return out

    # ------------------------------------------------------------------

    def import_meshes(self) -> None:
        self.mesh_offsets = []
        for mesh in self.asset.meshes:
            self.mesh_offsets.append(len(self.scene.meshes))
            for p, primitive in enumerate(mesh.primitives):
                name = mesh.name
                if len(mesh.primitives) > 1:
                    name = f"{mesh.name}-{p}"
                self.scene.meshes.append(self._convert_primitive(name, primitive))
        # sentinel so that mesh i always spans offsets[i]:offsets[i + 1]
        self.mesh_offsets.append(len(self.scene.meshes))

    def _fit(self, data: np.ndarray, count: int, what: str, mesh_name: str) -> np.ndarray:
        """Clamp an attribute array to the vertex count, truncating or zero padding"""
        if len(data) == count:
            return data
        self.warn(f"Mesh '{mesh_name}': {what} count {len(data)} does not match "
                  f"vertex count {count}")
        if len(data) > count:
            return data[:count]
        pad = np.zeros((count - len(data), data.shape[1]), dtype=data.dtype)
        return np.vstack([data, pad])

    def _convert_primitive(self, name: str, primitive: Primitive) -> SceneMesh:
        attrs = primitive.attributes
        if attrs.position is not None:
            vertices = np.array(attrs.position.data[:, :3], dtype=np.float64)
        else:
            self.warn(f"Mesh '{name}' has no vertex positions")
            vertices = np.zeros((0, 3), dtype=np.float64)
        n = len(vertices)

        normals = None
        if attrs.normal is not None:
            normals = self._fit(np.array(attrs.normal.data[:, :3], dtype=np.float64),
                                n, 'normal', name)

        uvs = []
        for tc in attrs.texcoord[:MAX_TEXTURE_COORDS]:
            uv = self._fit(np.array(tc.data, dtype=np.float64), n, 'texture coordinate', name)
            if self.asset.flip_uv_v and uv.shape[1] > 1:
                uv[:, 1] = 1.0 - uv[:, 1]
            uvs.append(uv)

        colors = []
        for col in attrs.color[:MAX_COLOR_SETS]:
            rgba = np.array(col.data, dtype=np.float64)
            if rgba.shape[1] == 3:
                rgba = np.hstack([rgba, np.ones((len(rgba), 1))])
            colors.append(self._fit(rgba, n, 'color', name))

        if primitive.indices is not None:
            indices = primitive.indices.flat()
        else:
            indices = np.arange(n, dtype=np.int64)
        faces = build_faces(primitive.mode, indices, self.sink)
        if not faces_in_range(faces, n):
            self.warn(f"Mesh '{name}' has face indices outside of its {n} vertices",
                      ErrorKind.OUT_OF_RANGE_INDEX)

        material = primitive.material if primitive.material is not None else 0
        if not 0 <= material < len(self.scene.materials):
            self.warn(f"Mesh '{name}' references missing material {material}",
                      ErrorKind.OUT_OF_RANGE_INDEX)
            material = 0

        bones = [SceneBone(b.name, np.array(b.offset_matrix, dtype=np.float64), list(b.weights))
                 for b in primitive.bones]

        return SceneMesh(name=name, vertices=vertices, faces=faces, normals=normals, uvs=uvs,
                         colors=colors, material_index=material, bones=bones)

    # ------------------------------------------------------------------

    def import_cameras(self) -> None:
        for cam in self.asset.cameras:
            if cam.type == 'orthographic':
                aspect = cam.xmag / cam.ymag if cam.ymag != 0.0 else 1.0
                self.scene.cameras.append(SceneCamera(
                    name=cam.name, horizontal_fov=0.0, aspect=aspect, clip_near=cam.znear,
                    clip_far=cam.zfar if cam.zfar is not None else 1000.0, orthographic=True))
            else:
                aspect = cam.aspect_ratio or 0.0
                self.scene.cameras.append(SceneCamera(
                    name=cam.name, horizontal_fov=cam.yfov * (aspect if aspect else 1.0),
                    aspect=aspect, clip_near=cam.znear,
                    clip_far=cam.zfar if cam.zfar is not None else 1000.0))

    def import_lights(self) -> None:
        for light in self.asset.lights:
            if light.type not in ('directional', 'point', 'spot', 'ambient'):
                self.warn(f"Unknown light type '{light.type}', using point light",
                          ErrorKind.UNKNOWN_ENUM)
            light_type = light.type if light.type in ('directional', 'spot', 'ambient') else 'point'
            inner = light.inner_cone_angle
            if inner is None:
                exponent = light.falloff_exponent or 0.0
                inner = light.outer_cone_angle * (1.0 - 1.0 / (1.0 + exponent))
            self.scene.lights.append(SceneLight(
                name=light.name, type=light_type, color=tuple(light.color),
                intensity=light.intensity, range=light.range, inner_cone_angle=inner,
                outer_cone_angle=light.outer_cone_angle))

    # ------------------------------------------------------------------

    def import_nodes(self) -> None:
        roots = []
        for index in self.asset.scene_roots:
            if not 0 <= index < len(self.asset.nodes):
                self.warn(f"Scene root {index} does not exist", ErrorKind.OUT_OF_RANGE_INDEX)
                continue
            roots.append(self.import_node(index, set()))

        if len(roots) == 1:
            self.scene.root = roots[0]
        else:
            # zero or several roots: hang them below one synthesized node
            self.scene.root = SceneNode(ROOT_NODE_NAME, children=roots)

    def import_node(self, index: int, path: Set[int]) -> SceneNode:
        src = self.asset.nodes[index]
        node = SceneNode(src.name, transform=compose_transform(src))
        path = path | {index}

        for child in src.children:
            if not 0 <= child < len(self.asset.nodes):
                self.warn(f"Node '{src.name}' has missing child {child}",
                          ErrorKind.OUT_OF_RANGE_INDEX)
            elif child in path:
                self.warn(f"Node '{src.name}' would contain itself through child {child}, "
                          "child skipped", ErrorKind.UNRESOLVED_REFERENCE)
            else:
                node.children.append(self.import_node(child, path))

        for mesh in src.meshes:
            if not 0 <= mesh < len(self.asset.meshes):
                self.warn(f"Node '{src.name}' references missing mesh {mesh}",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                continue
            node.meshes.extend(range(self.mesh_offsets[mesh], self.mesh_offsets[mesh + 1]))

        if src.camera is not None:
            if 0 <= src.camera < len(self.scene.cameras):
                self.scene.cameras[src.camera].name = node.name
            else:
                self.warn(f"Node '{src.name}' references missing camera {src.camera}",
                          ErrorKind.OUT_OF_RANGE_INDEX)
        if src.light is not None:
            if 0 <= src.light < len(self.scene.lights):
                self.scene.lights[src.light].name = node.name
            else:
                self.warn(f"Node '{src.name}' references missing light {src.light}",
                          ErrorKind.OUT_OF_RANGE_INDEX)
        return node

    def import_animations(self) -> None:
        names = {node.name for node in self.scene.root.walk()}
        for anim in self.asset.animations:
            channels = []
            for channel in anim.channels:
                if channel.node_name not in names:
                    self.warn(f"Animation '{anim.name}' targets unknown node "
                              f"'{channel.node_name}', channel dropped",
                              ErrorKind.UNRESOLVED_REFERENCE)
                    continue
                channels.append(SceneNodeAnimation(
                    node_name=channel.node_name,
                    position_keys=list(channel.position_keys),
                    rotation_keys=list(channel.rotation_keys),
                    scaling_keys=list(channel.scaling_keys),
                    position_interpolation=channel.position_interpolation,
                    rotation_interpolation=channel.rotation_interpolation,
                    scaling_interpolation=channel.scaling_interpolation,
                ))
            self.scene.animations.append(SceneAnimation(
                name=anim.name, duration=anim.duration,
                ticks_per_second=anim.ticks_per_second, channels=channels))


def assemble_scene(asset: Asset, sink: Optional[DiagnosticSink] = None) -> Scene:
    return SceneAssembler(asset, sink).assemble()
