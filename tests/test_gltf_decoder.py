"""
Tests for the glTF/GLB decoder.
"""

import base64
import json
import struct

import numpy as np
import pytest

from sceneio_asset import PrimitiveMode
from sceneio_diagnostics import DiagnosticSink, ErrorKind, SceneImportError
from sceneio_gltf_decoder import decode_gltf, is_glb

POSITIONS = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype='<f4')
INDICES = np.array([0, 1, 2], dtype='<u2')


def data_uri(payload: bytes) -> str:
    return 'data:application/octet-stream;base64,' + base64.b64encode(payload).decode('ascii')


def triangle_payload() -> bytes:
    return POSITIONS.tobytes() + INDICES.tobytes()


def triangle_document(buffer=None, **extra):
    payload = triangle_payload()
    doc = {
        'asset': {'version': '2.0', 'generator': 'unit test'},
        'buffers': [buffer if buffer is not None else
                    {'uri': data_uri(payload), 'byteLength': len(payload)}],
        'bufferViews': [
            {'buffer': 0, 'byteOffset': 0, 'byteLength': 36},
            {'buffer': 0, 'byteOffset': 36, 'byteLength': 6},
        ],
        'accessors': [
            {'bufferView': 0, 'componentType': 5126, 'count': 3, 'type': 'VEC3'},
            {'bufferView': 1, 'componentType': 5123, 'count': 3, 'type': 'SCALAR'},
        ],
        'meshes': [{'name': 'tri', 'primitives': [
            {'attributes': {'POSITION': 0}, 'indices': 1, 'material': 0}]}],
        'materials': [{'name': 'mat'}],
        'nodes': [{'name': 'n', 'mesh': 0}],
        'scenes': [{'nodes': [0]}],
        'scene': 0,
    }
    doc.update(extra)
    return doc


def glb(doc, binary: bytes) -> bytes:
    json_chunk = json.dumps(doc).encode('utf-8')
    json_chunk += b' ' * (-len(json_chunk) % 4)
    binary += b'\x00' * (-len(binary) % 4)
    total = 12 + 8 + len(json_chunk) + 8 + len(binary)
    return (struct.pack('<4sII', b'glTF', 2, total)
            + struct.pack('<II', len(json_chunk), 0x4E4F534A) + json_chunk
            + struct.pack('<II', len(binary), 0x004E4942) + binary)


def decode(doc, base_dir=None):
    sink = DiagnosticSink(verbose=False)
    data = doc if isinstance(doc, bytes) else json.dumps(doc).encode('utf-8')
    return decode_gltf(data, base_dir, sink), sink


def test_triangle_from_data_uri():
    asset, sink = decode(triangle_document())
    assert sink.warnings == []
    assert asset.flip_uv_v is True
    prim = asset.meshes[0].primitives[0]
    assert prim.mode == PrimitiveMode.TRIANGLES
    assert prim.attributes.position.data.tolist() == POSITIONS.tolist()
    assert prim.indices.flat().tolist() == [0, 1, 2]
    assert prim.material == 0
    assert asset.nodes[0].meshes == [0]
    assert asset.scene_roots == [0]
    assert asset.metadata['SourceAsset_Format'] == 'glTF'
    assert asset.metadata['SourceAsset_FormatVersion'] == '2.0'
    assert asset.metadata['SourceAsset_Generator'] == 'unit test'


def test_glb_binary_chunk():
    payload = triangle_payload()
    doc = triangle_document(buffer={'byteLength': len(payload)})
    data = glb(doc, payload)
    assert is_glb(data)
    asset, _ = decode(data)
    assert asset.meshes[0].primitives[0].attributes.position.count == 3


def test_glb_version_must_be_two():
    data = bytearray(glb(triangle_document(), b''))
    struct.pack_into('<I', data, 4, 1)
    with pytest.raises(SceneImportError):
        decode(bytes(data))


def test_not_json_is_fatal():
    with pytest.raises(SceneImportError):
        decode(b'{"asset": ')


def test_unsupported_asset_version_is_fatal():
    doc = triangle_document()
    doc['asset']['version'] = '1.0'
    with pytest.raises(SceneImportError):
        decode(doc)


def test_accessor_past_end_of_buffer_is_fatal():
    doc = triangle_document()
    doc['accessors'][0]['count'] = 30
    with pytest.raises(SceneImportError) as info:
        decode(doc)
    assert info.value.kind == ErrorKind.STRUCTURAL_EOF


def test_missing_accessor_is_fatal():
    doc = triangle_document()
    doc['meshes'][0]['primitives'][0]['indices'] = 9
    with pytest.raises(SceneImportError) as info:
        decode(doc)
    assert info.value.kind == ErrorKind.UNRESOLVED_REFERENCE


def test_node_matrix_is_column_major():
    doc = triangle_document()
    doc['nodes'][0]['matrix'] = [1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0, 1, 2, 3, 1]
    asset, _ = decode(doc)
    assert asset.nodes[0].matrix[0:3, 3].tolist() == [1.0, 2.0, 3.0]
    assert asset.nodes[0].matrix[3].tolist() == [0.0, 0.0, 0.0, 1.0]


def test_interleaved_attributes():
    interleaved = np.array([[0, 0, 0, 0, 0, 1],
                            [1, 0, 0, 0, 0, 1],
                            [0, 1, 0, 0, 0, 1]], dtype='<f4').tobytes()
    doc = triangle_document(buffer={'uri': data_uri(interleaved), 'byteLength': len(interleaved)})
    doc['bufferViews'] = [{'buffer': 0, 'byteLength': len(interleaved), 'byteStride': 24}]
    doc['accessors'] = [
        {'bufferView': 0, 'componentType': 5126, 'count': 3, 'type': 'VEC3'},
        {'bufferView': 0, 'byteOffset': 12, 'componentType': 5126, 'count': 3, 'type': 'VEC3'},
    ]
    doc['meshes'][0]['primitives'][0] = {'attributes': {'POSITION': 0, 'NORMAL': 1}}
    asset, _ = decode(doc)
    attrs = asset.meshes[0].primitives[0].attributes
    assert attrs.position.data[2].tolist() == [0.0, 1.0, 0.0]
    assert np.allclose(attrs.normal.data, [0.0, 0.0, 1.0])
    assert asset.meshes[0].primitives[0].indices is None


def test_normalized_colors():
    colors = np.array([255, 0, 51, 255] * 3, dtype=np.uint8).tobytes()
    payload = triangle_payload() + b'\x00\x00' + colors
    doc = triangle_document(buffer={'uri': data_uri(payload), 'byteLength': len(payload)})
    doc['bufferViews'].append({'buffer': 0, 'byteOffset': 44, 'byteLength': 12})
    doc['accessors'].append({'bufferView': 2, 'componentType': 5121, 'normalized': True,
                             'count': 3, 'type': 'VEC4'})
    doc['meshes'][0]['primitives'][0]['attributes']['COLOR_0'] = 2
    asset, _ = decode(doc)
    color = asset.meshes[0].primitives[0].attributes.color[0].data
    assert color[0].tolist() == pytest.approx([1.0, 0.0, 0.2, 1.0])


def test_external_buffer(tmp_path):
    payload = triangle_payload()
    (tmp_path / 'tri.bin').write_bytes(payload)
    doc = triangle_document(buffer={'uri': 'tri.bin', 'byteLength': len(payload)})
    asset, _ = decode(doc, str(tmp_path))
    assert asset.meshes[0].primitives[0].attributes.position.count == 3


def test_missing_external_buffer_is_fatal(tmp_path):
    doc = triangle_document(buffer={'uri': 'gone.bin', 'byteLength': 42})
    with pytest.raises(SceneImportError):
        decode(doc, str(tmp_path))


def test_materials_and_images():
    png = b'\x89PNG\r\n\x1a\n'
    doc = triangle_document(
        images=[{'uri': 'data:image/png;base64,' + base64.b64encode(png).decode('ascii')},
                {'uri': 'textures/wood%20grain.jpg'}],
        textures=[{'source': 0}, {'source': 1}],
        materials=[{
            'name': 'glass',
            'doubleSided': True,
            'alphaMode': 'BLEND',
            'pbrMetallicRoughness': {
                'baseColorFactor': [1.0, 1.0, 1.0, 0.5],
                'baseColorTexture': {'index': 1, 'texCoord': 1},
            },
            'normalTexture': {'index': 0, 'extensions': {'KHR_texture_transform': {
                'offset': [0.5, 0.0], 'scale': [2.0, 2.0]}}},
            'occlusionTexture': {'index': 7},
        }])
    asset, sink = decode(doc)
    first, second = asset.images
    assert first.data == png and first.mime_type == 'image/png'
    assert second.uri == 'textures/wood grain.jpg'
    assert second.name == 'wood grain.jpg'

    mat = asset.materials[0]
    assert mat.two_sided is True
    assert mat.blend_transparent is True
    assert mat.transparency == 0.5
    assert mat.diffuse.image == 1 and mat.diffuse.texcoord == 1
    assert mat.maps['normal'].scale == (2.0, 2.0)
    assert mat.maps['normal'].offset == (0.5, 0.0)
    assert mat.maps['occlusion'].image is None
    assert sink.count(ErrorKind.OUT_OF_RANGE_INDEX) == 1


def test_cameras_and_lights():
    doc = triangle_document(
        cameras=[{'type': 'perspective', 'perspective': {'yfov': 0.7, 'znear': 0.1}},
                 {'type': 'orthographic',
                  'orthographic': {'xmag': 2.0, 'ymag': 1.0, 'znear': 0.0, 'zfar': 5.0}}],
        extensions={'KHR_lights_punctual': {'lights': [
            {'type': 'spot', 'intensity': 4.0, 'spot': {'outerConeAngle': 0.5}}]}})
    doc['nodes'].append({'name': 'cam', 'camera': 1,
                         'extensions': {'KHR_lights_punctual': {'light': 0}}})
    asset, _ = decode(doc)
    persp, ortho = asset.cameras
    assert persp.yfov == 0.7 and persp.zfar is None
    assert ortho.type == 'orthographic' and ortho.xmag == 2.0
    light = asset.lights[0]
    assert (light.type, light.intensity, light.outer_cone_angle) == ('spot', 4.0, 0.5)
    assert light.inner_cone_angle == 0.0
    assert asset.nodes[1].camera == 1
    assert asset.nodes[1].light == 0


def test_roots_without_scenes_are_parentless_nodes():
    doc = triangle_document()
    del doc['scenes'], doc['scene']
    doc['nodes'] = [{'name': 'a', 'children': [1]}, {'name': 'b'}, {'name': 'c'}]
    asset, _ = decode(doc)
    assert asset.scene_roots == [0, 2]


def test_cubic_spline_keeps_values():
    times = np.array([0.0, 1.0], dtype='<f4').tobytes()
    values = np.array([[9, 9, 9], [1, 2, 3], [9, 9, 9],
                       [9, 9, 9], [4, 5, 6], [9, 9, 9]], dtype='<f4').tobytes()
    payload = triangle_payload() + b'\x00\x00' + times + values
    doc = triangle_document(buffer={'uri': data_uri(payload), 'byteLength': len(payload)})
    doc['bufferViews'] += [{'buffer': 0, 'byteOffset': 44, 'byteLength': 8},
                           {'buffer': 0, 'byteOffset': 52, 'byteLength': 72}]
    doc['accessors'] += [
        {'bufferView': 2, 'componentType': 5126, 'count': 2, 'type': 'SCALAR'},
        {'bufferView': 3, 'componentType': 5126, 'count': 6, 'type': 'VEC3'},
    ]
    doc['animations'] = [{
        'name': 'move',
        'samplers': [{'input': 2, 'output': 3, 'interpolation': 'CUBICSPLINE'}],
        'channels': [{'sampler': 0, 'target': {'node': 0, 'path': 'translation'}},
                     {'sampler': 0, 'target': {'node': 0, 'path': 'weights'}}],
    }]
    asset, sink = decode(doc)
    anim = asset.animations[0]
    assert anim.name == 'move'
    assert anim.ticks_per_second == 1.0
    channel = anim.channels[0]
    assert channel.node_name == 'n'
    assert channel.position_interpolation == 'bezier'
    assert channel.rotation_interpolation == 'track'
    assert channel.position_keys == [(0.0, (1.0, 2.0, 3.0)), (1.0, (4.0, 5.0, 6.0))]
    assert anim.duration == 1.0
    assert sink.count(ErrorKind.UNKNOWN_ENUM) == 1


def test_buffer_data_uri_with_any_media_type():
    payload = triangle_payload()
    uri = 'data:application/gltf-buffer;base64,' + base64.b64encode(payload).decode('ascii')
    asset, _ = decode(triangle_document(buffer={'uri': uri, 'byteLength': len(payload)}))
    assert asset.meshes[0].primitives[0].indices.flat().tolist() == [0, 1, 2]


def test_malformed_asset_is_fatal():
    with pytest.raises(SceneImportError):
        decode({'asset': '2.0'})


def test_wrongly_typed_field_is_fatal():
    doc = triangle_document()
    doc['accessors'][0]['count'] = 'three'
    with pytest.raises(SceneImportError):
        decode(doc)


def test_sampler_without_input_is_skipped():
    doc = triangle_document()
    doc['animations'] = [{
        'samplers': [{'output': 0}],
        'channels': [{'sampler': 0, 'target': {'node': 0, 'path': 'translation'}}],
    }]
    asset, sink = decode(doc)
    assert asset.animations[0].channels == []
    assert sink.count(ErrorKind.UNRESOLVED_REFERENCE) == 1
