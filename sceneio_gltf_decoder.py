"""
sceneio glTF Decoder
Reads glTF 2.0 documents (.gltf JSON or binary .glb) into the intermediate Asset.

The container is loaded with pygltflib; buffers may be data URIs, files next to the
document or the GLB binary chunk. Accessors are decoded with numpy, honouring byte
offsets, strides and normalized integer components. Problems with the container
itself (not glTF, bad GLB header, missing buffer, accessor outside its buffer) are
fatal; everything else is a warning.
"""

import os
import struct
import warnings
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import unquote

import numpy as np
import pygltflib
from pygltflib import GLTF2

from sceneio_asset import (
    Accessor, Asset, AssetAnimation, AssetCamera, AssetLight, AssetMaterial, AssetMesh,
    AssetNode, Image, NodeAnimation, Primitive, PrimitiveAttributes, PrimitiveMode, TexProperty,
)
from sceneio_config import MAX_COLOR_SETS, MAX_TEXTURE_COORDS
from sceneio_diagnostics import DiagnosticSink, ErrorKind, SceneImportError

COMPONENT_TYPES = {
    pygltflib.BYTE: np.int8,
    pygltflib.UNSIGNED_BYTE: np.uint8,
    pygltflib.SHORT: np.int16,
    pygltflib.UNSIGNED_SHORT: np.uint16,
    pygltflib.UNSIGNED_INT: np.uint32,
    pygltflib.FLOAT: np.float32,
}

TYPE_SIZES = {
    pygltflib.SCALAR: 1,
    pygltflib.VEC2: 2,
    pygltflib.VEC3: 3,
    pygltflib.VEC4: 4,
    pygltflib.MAT2: 4,
    pygltflib.MAT3: 9,
    pygltflib.MAT4: 16,
}

# CUBICSPLINE keeps only the key values, the tangents are dropped
_INTERPOLATION = {
    pygltflib.ANIM_LINEAR: 'track',
    pygltflib.ANIM_STEP: 'track',
    pygltflib.ANIM_CUBICSPLINE: 'bezier',
}

_TARGET_PATHS = (pygltflib.TRANSLATION, pygltflib.ROTATION, pygltflib.SCALE)

# errors pygltflib and numpy raise on documents whose fields have the wrong shape
_MALFORMED = (AttributeError, IndexError, KeyError, TypeError, ValueError, OSError, struct.error)


def is_glb(data: bytes) -> bool:
    return data[:4] == pygltflib.MAGIC


def decode_data_uri(uri: str) -> Tuple[Optional[str], Optional[bytes]]:
    """
    Split a base64 data URI into (mime, bytes).
    pygltflib only decodes the octet-stream header, so other media types are
    re-headed before decoding. Returns None for the payload when it is not base64.
    """
    header, _, payload = uri.partition(',')
    mime = header[5:].split(';', 1)[0] or None
    if ';base64' not in header:
        return mime, None
    return mime, GLTF2.decode_data_uri(pygltflib.DATA_URI_HEADER + payload)


class GltfDecoder:
    def __init__(self, data: bytes, base_dir: Optional[str] = None,
                 sink: Optional[DiagnosticSink] = None):
        self.data = data
        self.base_dir = base_dir
        self.sink = sink if sink is not None else DiagnosticSink()
        self.gltf: Optional[GLTF2] = None
        self.buffers = []
        self.asset = Asset(flip_uv_v=True)

    def warn(self, message: str, kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
        self.sink.warn(None, message, kind)

    def fatal(self, message: str, kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
        self.sink.fatal(None, message, kind)

    def decode(self) -> Asset:
        try:
            self.read_container()
            self.load_buffers()
            self.read_images()
            self.read_materials()
            self.read_meshes()
            self.read_cameras()
            self.read_lights()
            self.read_nodes()
            self.read_scene_roots()
            self.read_animations()
            self.read_metadata()
        except SceneImportError:
            raise
        except _MALFORMED as e:
            self.fatal(f"Malformed glTF document: {type(e).__name__}: {e}")
        return self.asset

    # ------------------------------------------------------------------
    # container and buffers

    def read_container(self) -> None:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            if is_glb(self.data):
                self._read_glb()
            else:
                try:
                    self.gltf = GLTF2.gltf_from_json(self.data.decode('utf-8-sig'))
                except (UnicodeDecodeError, ValueError) as e:
                    self.fatal(f"Not a glTF document: {e}")
        for w in caught:
            if issubclass(w.category, UserWarning):
                self.warn(f"glTF container: {w.message}")

        if not isinstance(self.gltf, GLTF2) or not isinstance(self.gltf.asset, pygltflib.Asset):
            self.fatal("Not a glTF document: missing or malformed 'asset'")
        version = str(self.gltf.asset.version or '')
        if not version.startswith('2'):
            self.fatal(f"Unsupported glTF version '{version}', only 2.x can be read")
        if self.base_dir is not None:
            # same attribute GLTF2.load_json sets; external buffers resolve against it
            self.gltf._path = Path(self.base_dir)

    def _read_glb(self) -> None:
        if len(self.data) < 20:
            self.fatal("GLB file is too short", ErrorKind.STRUCTURAL_EOF)
        version = struct.unpack_from('<I', self.data, 4)[0]
        if not pygltflib.GLTF_MIN_VERSION <= version <= pygltflib.GLTF_MAX_VERSION:
            self.fatal(f"Unsupported GLB container version {version}")
        try:
            self.gltf = GLTF2.load_from_bytes(self.data)
        except (UnicodeDecodeError, ValueError) as e:
            self.fatal(f"GLB JSON chunk is not valid: {e}")
        if self.gltf is None:
            self.fatal("GLB file has no JSON chunk")

    def load_buffers(self) -> None:
        for i, buf in enumerate(self.gltf.buffers):
            uri = buf.uri
            if uri is None:
                if i != 0 or self.gltf.binary_blob() is None:
                    self.fatal(f"Buffer {i} has no uri and there is no GLB binary chunk",
                               ErrorKind.UNRESOLVED_REFERENCE)
                data = self.gltf.binary_blob()
            elif uri.startswith('data:'):
                _, data = decode_data_uri(uri)
                if data is None:
                    self.fatal(f"Buffer {i} is a data URI that is not base64 encoded")
            else:
                data = self._read_external(uri)
            if len(data) < (buf.byteLength or 0):
                self.fatal(f"Buffer {i} is shorter than its declared byteLength",
                           ErrorKind.STRUCTURAL_EOF)
            self.buffers.append(data)

    def _read_external(self, uri: str) -> bytes:
        if self.base_dir is None:
            self.fatal(f"Cannot resolve external buffer '{uri}' without a base directory",
                       ErrorKind.UNRESOLVED_REFERENCE)
        with warnings.catch_warnings():
            # pygltflib warns before returning None for a file it cannot find
            warnings.simplefilter('ignore')
            data = self.gltf.get_data_from_buffer_uri(unquote(uri))
        if data is None:
            self.fatal(f"Could not open buffer '{uri}' in {self.base_dir}",
                       ErrorKind.UNRESOLVED_REFERENCE)
        return data

    def _item(self, collection: str, index: int):
        items = getattr(self.gltf, collection) or []
        if not isinstance(index, int) or not 0 <= index < len(items):
            self.fatal(f"Reference to missing {collection}[{index}]",
                       ErrorKind.UNRESOLVED_REFERENCE)
        return items[index]

    def _view_buffer(self, view_index: int) -> Tuple[pygltflib.BufferView, bytes]:
        view = self._item('bufferViews', view_index)
        if not isinstance(view.buffer, int) or not 0 <= view.buffer < len(self.buffers):
            self.fatal(f"bufferViews[{view_index}] references a missing buffer",
                       ErrorKind.UNRESOLVED_REFERENCE)
        return view, self.buffers[view.buffer]

    def buffer_view_bytes(self, index: int) -> bytes:
        view, data = self._view_buffer(index)
        start = view.byteOffset or 0
        length = view.byteLength if view.byteLength is not None else len(data) - start
        return data[start:start + length]

    def read_accessor(self, index: int) -> Accessor:
        acc = self._item('accessors', index)
        dtype = np.dtype(COMPONENT_TYPES.get(acc.componentType, np.float32)).newbyteorder('<')
        if acc.componentType not in COMPONENT_TYPES:
            self.warn(f"accessors[{index}] has unknown componentType {acc.componentType}",
                      ErrorKind.UNKNOWN_ENUM)
        num_components = TYPE_SIZES.get(acc.type, 1)
        count = acc.count or 0
        if not isinstance(count, int) or count < 0:
            self.fatal(f"accessors[{index}] has an invalid count {acc.count!r}")

        if acc.sparse is not None:
            self.warn(f"accessors[{index}] is sparse, sparse accessors are not supported",
                      ErrorKind.UNKNOWN_ENUM)
        if acc.bufferView is None:
            return Accessor(np.zeros((count, num_components), dtype=np.float64))

        view, data = self._view_buffer(acc.bufferView)
        offset = (view.byteOffset or 0) + (acc.byteOffset or 0)
        element_size = dtype.itemsize * num_components
        stride = view.byteStride or element_size
        needed = offset + stride * (count - 1) + element_size if count else offset
        if needed > len(data):
            self.fatal(f"accessors[{index}] reads past the end of its buffer",
                       ErrorKind.STRUCTURAL_EOF)

        values = np.ndarray(shape=(count, num_components), dtype=dtype, buffer=data,
                            offset=offset, strides=(stride, dtype.itemsize)).copy()
        if acc.normalized and dtype.kind in 'iu':
            info = np.iinfo(dtype)
            values = np.maximum(values.astype(np.float64) / info.max, -1.0)
        return Accessor(values)

    # ------------------------------------------------------------------
    # images and materials

    def read_images(self) -> None:
        for i, img in enumerate(self.gltf.images):
            image = Image(name=img.name or '', mime_type=img.mimeType)
            uri = img.uri
            if img.bufferView is not None:
                image.data = self.buffer_view_bytes(img.bufferView)
            elif uri and uri.startswith('data:'):
                mime, image.data = decode_data_uri(uri)
                image.mime_type = image.mime_type or mime
                if image.data is None:
                    self.warn(f"images[{i}] is a data URI that is not base64 encoded")
            elif uri:
                image.uri = unquote(uri)
            else:
                self.warn(f"images[{i}] has neither uri nor bufferView")
            if not image.name:
                image.name = os.path.basename(image.uri) if image.uri else f"image_{i}"
            self.asset.images.append(image)

    def _texture_info(self, info, color=None) -> TexProperty:
        prop = TexProperty(color=color)
        if info is None:
            return prop
        textures = self.gltf.textures
        tex_index = info.index
        if not isinstance(tex_index, int) or not 0 <= tex_index < len(textures):
            self.warn(f"Material references missing texture {tex_index}",
                      ErrorKind.OUT_OF_RANGE_INDEX)
            return prop
        source = textures[tex_index].source
        if source is None:
            self.warn(f"textures[{tex_index}] has no image source")
            return prop
        prop.image = source
        prop.texcoord = info.texCoord or 0
        transform = (info.extensions or {}).get('KHR_texture_transform')
        if transform:
            prop.offset = tuple(transform.get('offset', (0.0, 0.0)))
            prop.scale = tuple(transform.get('scale', (1.0, 1.0)))
            prop.rotation = transform.get('rotation', 0.0)
            prop.texcoord = transform.get('texCoord', prop.texcoord)
        return prop

    def read_materials(self) -> None:
        for i, mat in enumerate(self.gltf.materials):
            pbr = mat.pbrMetallicRoughness or pygltflib.PbrMetallicRoughness()
            base = tuple(pbr.baseColorFactor or (1.0, 1.0, 1.0, 1.0))
            emissive = tuple(mat.emissiveFactor or (0.0, 0.0, 0.0)) + (1.0,)
            out = AssetMaterial(
                name=mat.name or f"material_{i}",
                diffuse=self._texture_info(pbr.baseColorTexture, base),
                emissive=self._texture_info(mat.emissiveTexture, emissive),
                two_sided=bool(mat.doubleSided),
            )
            if mat.alphaMode == pygltflib.BLEND:
                out.blend_transparent = True
                out.transparency = base[3]
            if mat.normalTexture is not None:
                out.maps['normal'] = self._texture_info(mat.normalTexture)
            if mat.occlusionTexture is not None:
                out.maps['occlusion'] = self._texture_info(mat.occlusionTexture)
            if pbr.metallicRoughnessTexture is not None:
                out.maps['metallic_roughness'] = self._texture_info(pbr.metallicRoughnessTexture)
            self.asset.materials.append(out)

    # ------------------------------------------------------------------
    # meshes

    def read_meshes(self) -> None:
        for i, mesh in enumerate(self.gltf.meshes):
            out = AssetMesh(name=mesh.name or f"mesh_{i}")
            for prim in mesh.primitives:
                out.primitives.append(self._read_primitive(out.name, prim))
            self.asset.meshes.append(out)

    def _read_primitive(self, mesh_name: str, prim: pygltflib.Primitive) -> Primitive:
        mode = prim.mode if prim.mode is not None else PrimitiveMode.TRIANGLES
        try:
            mode = PrimitiveMode(mode)
        except ValueError:
            self.warn(f"Mesh '{mesh_name}' uses unknown primitive mode {mode}, "
                      "reading it as triangles", ErrorKind.UNKNOWN_ENUM)
            mode = PrimitiveMode.TRIANGLES

        # extra TEXCOORD_n / COLOR_n sets are plain attributes on pygltflib's Attributes
        attributes = prim.attributes
        attrs = PrimitiveAttributes()
        if attributes.POSITION is not None:
            attrs.position = self.read_accessor(attributes.POSITION)
        if attributes.NORMAL is not None:
            attrs.normal = self.read_accessor(attributes.NORMAL)
        for n in range(MAX_TEXTURE_COORDS):
            index = getattr(attributes, f"TEXCOORD_{n}", None)
            if index is None:
                break
            attrs.texcoord.append(self.read_accessor(index))
        for n in range(MAX_COLOR_SETS):
            index = getattr(attributes, f"COLOR_{n}", None)
            if index is None:
                break
            attrs.color.append(self.read_accessor(index))

        indices = None
        if prim.indices is not None:
            indices = self.read_accessor(prim.indices)
        return Primitive(mode=mode, attributes=attrs, indices=indices, material=prim.material)

    # ------------------------------------------------------------------
    # cameras, lights, nodes

    def read_cameras(self) -> None:
        for i, cam in enumerate(self.gltf.cameras):
            cam_type = cam.type or pygltflib.PERSPECTIVE
            out = AssetCamera(name=cam.name or f"camera_{i}", type=cam_type)
            if cam_type == pygltflib.ORTHOGRAPHIC:
                ortho = cam.orthographic or pygltflib.Orthographic()
                out.xmag = ortho.xmag or 0.0
                out.ymag = ortho.ymag or 0.0
                out.znear = ortho.znear or 0.0
                out.zfar = ortho.zfar
            else:
                if cam_type != pygltflib.PERSPECTIVE:
                    self.warn(f"cameras[{i}] has unknown type '{cam_type}'", ErrorKind.UNKNOWN_ENUM)
                    out.type = pygltflib.PERSPECTIVE
                persp = cam.perspective or pygltflib.Perspective()
                out.aspect_ratio = persp.aspectRatio
                out.yfov = persp.yfov or 0.0
                out.znear = persp.znear if persp.znear is not None else 0.01
                out.zfar = persp.zfar
            self.asset.cameras.append(out)

    def read_lights(self) -> None:
        extension = (self.gltf.extensions or {}).get('KHR_lights_punctual') or {}
        for i, light in enumerate(extension.get('lights', [])):
            if not isinstance(light, dict):
                self.warn(f"KHR_lights_punctual light {i} is not an object, skipped")
                continue
            spot = light.get('spot', {})
            self.asset.lights.append(AssetLight(
                name=light.get('name', f"light_{i}"),
                type=light.get('type', 'point'),
                color=tuple(light.get('color', (1.0, 1.0, 1.0))),
                intensity=light.get('intensity', 1.0),
                range=light.get('range'),
                inner_cone_angle=spot.get('innerConeAngle', 0.0),
                outer_cone_angle=spot.get('outerConeAngle', np.pi / 4.0),
            ))

    def read_nodes(self) -> None:
        for i, node in enumerate(self.gltf.nodes):
            out = AssetNode(name=node.name or f"node_{i}", children=list(node.children or []))
            if node.matrix is not None:
                if len(node.matrix) != 16:
                    self.warn(f"nodes[{i}] matrix has {len(node.matrix)} values, ignored")
                else:
                    # column-major in the file
                    out.matrix = np.array(node.matrix, dtype=np.float64).reshape(4, 4).T
            if node.translation is not None:
                out.translation = tuple(node.translation)
            if node.rotation is not None:
                out.rotation = tuple(node.rotation)
            if node.scale is not None:
                out.scale = tuple(node.scale)
            if node.mesh is not None:
                out.meshes.append(node.mesh)
            out.camera = node.camera
            light = (node.extensions or {}).get('KHR_lights_punctual')
            if isinstance(light, dict):
                out.light = light.get('light')
            self.asset.nodes.append(out)

    def read_scene_roots(self) -> None:
        scenes = self.gltf.scenes
        scene_index = self.gltf.scene if self.gltf.scene is not None else 0
        if scenes:
            if not isinstance(scene_index, int) or not 0 <= scene_index < len(scenes):
                self.warn(f"Default scene {scene_index} does not exist, using scene 0",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                scene_index = 0
            self.asset.scene_roots = list(scenes[scene_index].nodes or [])
            return
        # no scenes: every node that is nobody's child is a root
        children = {c for node in self.asset.nodes for c in node.children}
        self.asset.scene_roots = [i for i in range(len(self.asset.nodes)) if i not in children]

    # ------------------------------------------------------------------
    # animations and metadata

    def read_animations(self) -> None:
        for a, anim in enumerate(self.gltf.animations):
            samplers = anim.samplers
            channels: Dict[int, NodeAnimation] = {}
            for channel in anim.channels:
                target = channel.target or pygltflib.AnimationChannelTarget()
                node = target.node
                path = target.path
                if path not in _TARGET_PATHS:
                    self.warn(f"Animation channel path '{path}' is not supported",
                              ErrorKind.UNKNOWN_ENUM)
                    continue
                if not isinstance(node, int) or not 0 <= node < len(self.asset.nodes):
                    self.warn(f"Animation channel targets missing node {node}",
                              ErrorKind.UNRESOLVED_REFERENCE)
                    continue
                sampler_index = channel.sampler
                if not isinstance(sampler_index, int) or not 0 <= sampler_index < len(samplers):
                    self.warn(f"Animation channel uses missing sampler {sampler_index}",
                              ErrorKind.OUT_OF_RANGE_INDEX)
                    continue
                sampler = samplers[sampler_index]
                if sampler.input is None or sampler.output is None:
                    self.warn(f"animations[{a}] sampler {sampler_index} has no input or output "
                              "accessor, channel skipped", ErrorKind.UNRESOLVED_REFERENCE)
                    continue
                times = self.read_accessor(sampler.input).flat()
                values = self.read_accessor(sampler.output).data
                interpolation = sampler.interpolation or pygltflib.ANIM_LINEAR
                if interpolation == pygltflib.ANIM_CUBICSPLINE:
                    values = values[1::3]
                out = channels.setdefault(node, NodeAnimation(node_name=self.asset.nodes[node].name))
                kind = _INTERPOLATION.get(interpolation, 'track')
                keys = [(float(t), tuple(float(x) for x in v)) for t, v in zip(times, values)]
                if path == pygltflib.TRANSLATION:
                    out.position_keys = keys
                    out.position_interpolation = kind
                elif path == pygltflib.ROTATION:
                    out.rotation_keys = keys
                    out.rotation_interpolation = kind
                else:
                    out.scaling_keys = keys
                    out.scaling_interpolation = kind
            self.asset.animations.append(AssetAnimation(
                name=anim.name or f"animation_{a}", ticks_per_second=1.0,
                channels=list(channels.values())))

    def read_metadata(self) -> None:
        info = self.gltf.asset
        metadata = {'SourceAsset_Format': 'glTF'}
        if info.version:
            metadata['SourceAsset_FormatVersion'] = str(info.version)
        # pygltflib fills in its own generator when the document names none
        if info.generator and info.generator != pygltflib.Asset.generator:
            metadata['SourceAsset_Generator'] = str(info.generator)
        if info.copyright:
            metadata['SourceAsset_Copyright'] = str(info.copyright)
        self.asset.metadata = metadata


def decode_gltf(data: bytes, base_dir: Optional[str] = None,
                sink: Optional[DiagnosticSink] = None) -> Asset:
    return GltfDecoder(data, base_dir, sink).decode()
