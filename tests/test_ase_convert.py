"""
Tests for turning parsed ASE sections into the intermediate asset model.
"""

import numpy as np
import pytest

from ase_samples import BOX_SCENE, TARGET_CAMERA, mesh_object
from sceneio_ase_convert import convert_ase, smoothing_group_normals
from sceneio_ase_parser import parse_ase
from sceneio_assembler import assemble_scene
from sceneio_config import ImportSettings
from sceneio_diagnostics import DiagnosticSink, ErrorKind

TRIANGLE_VERTICES = (
    "*MESH_NUMVERTEX 3\n"
    "*MESH_VERTEX_LIST {\n"
    "*MESH_VERTEX 0 0.0 0.0 0.0\n"
    "*MESH_VERTEX 1 1.0 0.0 0.0\n"
    "*MESH_VERTEX 2 0.0 1.0 0.0\n"
    "}\n"
)


def convert(text, settings=None):
    sink = DiagnosticSink(verbose=False)
    parser = parse_ase(text.encode('latin-1'), sink)
    return convert_ase(parser, sink, settings), sink


def test_box_scene():
    asset, sink = convert(BOX_SCENE)
    assert sink.warnings == []
    assert asset.flip_uv_v is False
    assert asset.scene_roots == [0]

    node = asset.nodes[0]
    assert node.name == 'Box01'
    assert node.matrix[0, 3] == 10.0
    assert node.meshes == [0]

    prim = asset.meshes[0].primitives[0]
    assert prim.material == 0
    positions = prim.attributes.position.data
    assert positions.shape == (6, 3)
    # vertices are stored relative to the node
    assert positions[1].tolist() == pytest.approx([1.0, 0.0, 0.0])
    assert np.allclose(prim.attributes.normal.data, [0.0, 0.0, 1.0])
    uv = prim.attributes.texcoord[0].data
    assert uv.shape == (6, 2)
    assert uv[5].tolist() == [0.0, 1.0]

    mat = asset.materials[0]
    assert mat.name == 'Red'
    assert mat.diffuse.color == (1.0, 0.0, 0.0, 1.0)
    assert mat.diffuse.scale == (2.0, 1.0)
    assert mat.blend_transparent is True
    assert asset.images[mat.diffuse.image].name == 'red.png'
    assert asset.images[mat.diffuse.image].uri == 'textures\\red.png'

    assert asset.animations == []
    assert asset.metadata['SourceAsset_Format'] == 'ASE'
    assert asset.metadata['SourceAsset_FormatVersion'] == '200'
    assert asset.metadata['Comments'] == ['test scene']


def test_submaterials_split_mesh_into_primitives():
    text = (
        '*MATERIAL_LIST {\n*MATERIAL_COUNT 1\n*MATERIAL 0 {\n*MATERIAL_NAME "multi"\n'
        '*NUMSUBMTLS 2\n*SUBMATERIAL 0 {\n*MATERIAL_NAME "a"\n}\n'
        '*SUBMATERIAL 1 {\n*MATERIAL_NAME "b"\n}\n}\n}\n'
        + mesh_object(
            TRIANGLE_VERTICES
            + "*MESH_NUMFACES 3\n"
            "*MESH_FACE_LIST {\n"
            "*MESH_FACE 0: A: 0 B: 1 C: 2 *MESH_MTLID 0\n"
            "*MESH_FACE 1: A: 0 B: 1 C: 2 *MESH_MTLID 1\n"
            "*MESH_FACE 2: A: 0 B: 1 C: 2 *MESH_MTLID 5\n"
            "}"))
    asset, sink = convert(text)
    assert [m.name for m in asset.materials] == ['multi', 'a', 'b']
    prims = asset.meshes[0].primitives
    assert [p.material for p in prims] == [1, 2]
    assert prims[0].attributes.position.count == 3
    assert prims[1].attributes.position.count == 6
    assert sink.count(ErrorKind.OUT_OF_RANGE_INDEX) == 1


def test_node_matrices_are_parent_relative():
    text = ('*HELPEROBJECT {\n*NODE_NAME "P"\n*NODE_TM {\n*NODE_NAME "P"\n'
            '*TM_ROW3 5.0 0.0 0.0\n}\n}\n'
            '*HELPEROBJECT {\n*NODE_NAME "C"\n*NODE_PARENT "P"\n*NODE_TM {\n*NODE_NAME "C"\n'
            '*TM_ROW3 7.0 0.0 0.0\n}\n}\n')
    asset, _ = convert(text)
    parent, child = asset.nodes
    assert parent.children == [1]
    assert asset.scene_roots == [0]
    assert child.matrix[0, 3] == pytest.approx(2.0)


def test_unknown_parent_attaches_to_root():
    asset, sink = convert('*HELPEROBJECT {\n*NODE_NAME "C"\n*NODE_PARENT "Nope"\n}\n')
    assert asset.scene_roots == [0]
    assert sink.count(ErrorKind.UNRESOLVED_REFERENCE) == 1


def test_parent_cycle_is_broken():
    asset, sink = convert('*HELPEROBJECT {\n*NODE_NAME "A"\n*NODE_PARENT "B"\n}\n'
                          '*HELPEROBJECT {\n*NODE_NAME "B"\n*NODE_PARENT "A"\n}\n')
    assert asset.scene_roots == [0]
    assert asset.nodes[0].children == [1]
    assert asset.nodes[1].children == []
    assert sink.count(ErrorKind.UNRESOLVED_REFERENCE) == 1


def test_mesh_without_faces_has_no_mesh():
    asset, sink = convert(mesh_object(TRIANGLE_VERTICES))
    assert asset.meshes == []
    assert asset.nodes[0].meshes == []
    assert len(sink.warnings) == 1


def test_target_camera_gets_target_node():
    text = '*SCENE {\n*SCENE_FRAMESPEED 30\n*SCENE_TICKSPERFRAME 160\n}\n' + TARGET_CAMERA
    asset, _ = convert(text)
    cam = asset.cameras[0]
    assert (cam.yfov, cam.znear, cam.zfar) == (pytest.approx(0.8), 0.5, 500.0)
    assert [n.name for n in asset.nodes] == ['Cam', 'Cam.Target']
    assert asset.scene_roots == [0, 1]
    assert asset.nodes[1].matrix[0:3, 3].tolist() == [1.0, 2.0, 3.0]

    anim = asset.animations[0]
    assert anim.ticks_per_second == 4800.0
    assert [c.node_name for c in anim.channels] == ['Cam', 'Cam.Target']
    assert anim.channels[0].position_keys[1] == (160.0, (1.0, 0.0, 5.0))
    assert anim.duration == 160.0


def test_lights():
    text = ('*LIGHTOBJECT {\n*NODE_NAME "Spot"\n*LIGHT_TYPE Free\n'
            '*LIGHT_SETTINGS {\n*LIGHT_INTENS 3.0\n*LIGHT_HOTSPOT 30.0\n*LIGHT_FALLOFF 60.0\n}\n}\n'
            '*LIGHTOBJECT {\n*NODE_NAME "Bulb"\n}\n')
    asset, _ = convert(text)
    spot, bulb = asset.lights
    assert spot.type == 'spot'
    assert spot.intensity == 3.0
    assert spot.inner_cone_angle == pytest.approx(np.pi / 6.0)
    assert spot.outer_cone_angle == pytest.approx(np.pi / 3.0)
    assert bulb.type == 'point'
    assert asset.nodes[1].light == 1


def test_light_without_falloff_keeps_cone_order():
    asset, _ = convert('*LIGHTOBJECT {\n*NODE_NAME "Spot"\n*LIGHT_TYPE Free\n'
                       '*LIGHT_SETTINGS {\n*LIGHT_HOTSPOT 20.0\n}\n}\n'
                       '*LIGHTOBJECT {\n*NODE_NAME "Odd"\n*LIGHT_TYPE Free\n'
                       '*LIGHT_SETTINGS {\n*LIGHT_HOTSPOT 50.0\n*LIGHT_FALLOFF 10.0\n}\n}\n')
    spot, odd = asset.lights
    assert spot.inner_cone_angle == pytest.approx(np.radians(20.0))
    assert spot.outer_cone_angle == pytest.approx(np.radians(20.0))
    assert odd.outer_cone_angle >= odd.inner_cone_angle


def test_rotation_keys_accumulate():
    text = ('*HELPEROBJECT {\n*NODE_NAME "h"\n*TM_ANIMATION {\n*NODE_NAME "h"\n'
            '*CONTROL_ROT_TRACK {\n'
            '*CONTROL_ROT_SAMPLE 0 0.0 0.0 1.0 1.5707963\n'
            '*CONTROL_ROT_SAMPLE 160 0.0 0.0 1.0 1.5707963\n'
            '}\n}\n}\n')
    asset, _ = convert(text)
    keys = asset.animations[0].channels[0].rotation_keys
    half = np.sqrt(0.5)
    assert keys[0][1] == pytest.approx((0.0, 0.0, half, half), abs=1e-6)
    # the second key is relative to the first: 180 degrees in total
    assert np.abs(keys[1][1]) == pytest.approx((0.0, 0.0, 1.0, 0.0), abs=1e-6)
    assert asset.animations[0].ticks_per_second == 30.0


def test_interpolation_is_kept_per_track():
    text = ('*HELPEROBJECT {\n*NODE_NAME "h"\n*TM_ANIMATION {\n*NODE_NAME "h"\n'
            '*CONTROL_POS_TRACK {\n*CONTROL_POS_SAMPLE 0 1.0 2.0 3.0\n}\n'
            '*CONTROL_ROT_BEZIER {\n*CONTROL_BEZIER_ROT_KEY 0 0.0 0.0 1.0 0.5\n}\n'
            '}\n}\n')
    asset, _ = convert(text)
    channel = asset.animations[0].channels[0]
    assert channel.position_interpolation == 'track'
    assert channel.rotation_interpolation == 'bezier'
    assert channel.scaling_interpolation == 'track'

    scene = assemble_scene(asset, DiagnosticSink(verbose=False))
    out = scene.animations[0].channels[0]
    assert (out.position_interpolation, out.rotation_interpolation) == ('track', 'bezier')


def test_file_normals_are_normalized():
    asset, _ = convert(mesh_object(
        TRIANGLE_VERTICES
        + "*MESH_NUMFACES 1\n"
        "*MESH_FACE_LIST {\n*MESH_FACE 0: A: 0 B: 1 C: 2\n}\n"
        "*MESH_NORMALS {\n*MESH_FACENORMAL 0 0.0 0.0 2.0\n}"))
    normals = asset.meshes[0].primitives[0].attributes.normal.data
    assert np.allclose(normals, [0.0, 0.0, 1.0])


def test_normals_can_be_left_out():
    text = mesh_object(TRIANGLE_VERTICES + "*MESH_NUMFACES 1\n"
                       "*MESH_FACE_LIST {\n*MESH_FACE 0: A: 0 B: 1 C: 2\n}")
    asset, _ = convert(text, ImportSettings(verbose=False, generate_smooth_normals=False))
    assert asset.meshes[0].primitives[0].attributes.normal is None


def test_bone_weights_follow_corners():
    asset, _ = convert(mesh_object(
        TRIANGLE_VERTICES
        + "*MESH_NUMFACES 1\n"
        "*MESH_FACE_LIST {\n*MESH_FACE 0: A: 2 B: 1 C: 0\n}\n"
        "*MESH_WEIGHTS {\n*MESH_NUMVERTEX 3\n*MESH_NUMBONE 2\n"
        '*MESH_BONE_LIST {\n*MESH_BONE_NAME 0 "Hip"\n*MESH_BONE_NAME 1 "Spine"\n}\n'
        "*MESH_BONE_VERTEX_LIST {\n"
        "*MESH_BONE_VERTEX 0 0.0 0.0 0.0 0 1.0\n"
        "*MESH_BONE_VERTEX 2 0.0 0.0 0.0 1 0.5\n"
        "}\n}"))
    bones = asset.meshes[0].primitives[0].bones
    assert [b.name for b in bones] == ['Hip', 'Spine']
    assert bones[0].weights == [(2, 1.0)]
    assert bones[1].weights == [(0, 0.5)]


def test_smoothing_group_normals():
    positions = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    corners = np.array([[0, 1, 2], [0, 3, 1]])
    half = np.sqrt(0.5)

    shared = smoothing_group_normals(positions, corners, [1, 1])
    assert shared[0] == pytest.approx([0.0, half, half])
    assert shared[2] == pytest.approx([0.0, 0.0, 1.0])

    split = smoothing_group_normals(positions, corners, [1, 2])
    assert split[0] == pytest.approx([0.0, 0.0, 1.0])
    assert split[3] == pytest.approx([0.0, 1.0, 0.0])

    flat = smoothing_group_normals(positions, corners, [0, 0])
    assert flat[0] == pytest.approx([0.0, 0.0, 1.0])
