"""
Small ASE documents shared by the parser, converter and importer tests.
"""

BOX_SCENE = """*3DSMAX_ASCIIEXPORT\t200
*COMMENT "test scene"
*SCENE {
    *SCENE_FILENAME "box.max"
    *SCENE_FIRSTFRAME 0
    *SCENE_LASTFRAME 100
    *SCENE_FRAMESPEED 30
    *SCENE_TICKSPERFRAME 160
    *SCENE_BACKGROUND_STATIC 0.0000\t0.0000\t0.0000
    *SCENE_AMBIENT_STATIC 0.1000\t0.1000\t0.1000
}
*MATERIAL_LIST {
    *MATERIAL_COUNT 1
    *MATERIAL 0 {
        *MATERIAL_NAME "Red"
        *MATERIAL_CLASS "Standard"
        *MATERIAL_DIFFUSE 1.0000\t0.0000\t0.0000
        *MATERIAL_SHINE 0.2000
        *MATERIAL_TRANSPARENCY 0.2500
        *MATERIAL_SHADING Phong
        *MAP_DIFFUSE {
            *MAP_NAME "Map #1"
            *MAP_CLASS "Bitmap"
            *MAP_AMOUNT 1.0000
            *BITMAP "textures\\red.png"
            *UVW_U_TILING 2.0000
        }
    }
}
*GEOMOBJECT {
    *NODE_NAME "Box01"
    *NODE_TM {
        *NODE_NAME "Box01"
        *TM_ROW0 1.0000\t0.0000\t0.0000
        *TM_ROW1 0.0000\t1.0000\t0.0000
        *TM_ROW2 0.0000\t0.0000\t1.0000
        *TM_ROW3 10.0000\t0.0000\t0.0000
    }
    *MESH {
        *TIMEVALUE 0
        *MESH_NUMVERTEX 4
        *MESH_NUMFACES 2
        *MESH_VERTEX_LIST {
            *MESH_VERTEX    0\t10.0000\t0.0000\t0.0000
            *MESH_VERTEX    1\t11.0000\t0.0000\t0.0000
            *MESH_VERTEX    2\t11.0000\t1.0000\t0.0000
            *MESH_VERTEX    3\t10.0000\t1.0000\t0.0000
        }
        *MESH_FACE_LIST {
            *MESH_FACE    0:    A:    0 B:    1 C:    2 AB:    1 BC:    1 CA:    0\t *MESH_SMOOTHING 1 \t*MESH_MTLID 0
            *MESH_FACE    1:    A:    0 B:    2 C:    3 AB:    1 BC:    1 CA:    0\t *MESH_SMOOTHING 1 \t*MESH_MTLID 0
        }
        *MESH_NUMTVERTEX 4
        *MESH_TVERTLIST {
            *MESH_TVERT 0\t0.0000\t0.0000\t0.0000
            *MESH_TVERT 1\t1.0000\t0.0000\t0.0000
            *MESH_TVERT 2\t1.0000\t1.0000\t0.0000
            *MESH_TVERT 3\t0.0000\t1.0000\t0.0000
        }
        *MESH_NUMTVFACES 2
        *MESH_TFACELIST {
            *MESH_TFACE 0\t0\t1\t2
            *MESH_TFACE 1\t0\t2\t3
        }
    }
    *MATERIAL_REF 0
}
"""

TARGET_CAMERA = """*CAMERAOBJECT {
    *NODE_NAME "Cam"
    *CAMERA_TYPE Target
    *NODE_TM {
        *NODE_NAME "Cam"
        *TM_ROW3 0.0 0.0 5.0
    }
    *NODE_TM {
        *NODE_NAME "Cam.Target"
        *TM_ROW0 9.0 9.0 9.0
        *TM_ROW3 1.0 2.0 3.0
    }
    *CAMERA_SETTINGS {
        *TIMEVALUE 0
        *CAMERA_NEAR 0.5
        *CAMERA_FAR 500.0
        *CAMERA_FOV 0.8
    }
    *TM_ANIMATION {
        *NODE_NAME "Cam"
        *CONTROL_POS_TRACK {
            *CONTROL_POS_SAMPLE 0 0.0 0.0 5.0
            *CONTROL_POS_SAMPLE 160 1.0 0.0 5.0
        }
    }
    *TM_ANIMATION {
        *NODE_NAME "Cam.Target"
        *CONTROL_POS_TRACK {
            *CONTROL_POS_SAMPLE 0 1.0 2.0 3.0
        }
        *CONTROL_ROT_TRACK {
            *CONTROL_ROT_SAMPLE 0 0.0 0.0 1.0 0.5
        }
    }
}
"""

SOFT_SKIN = """*3DSMAX_ASCIIEXPORT 110
*GEOMOBJECT {
    *NODE_NAME "Body"
    *MESH {
        *MESH_NUMVERTEX 2
    }
}
*MESH_SOFTSKINVERTS {
Body
2
1 "Hip" 1.0
2 "Hip" 0.5 "Spine" 0.5
Ghost
1
1 "Hip" 1.0
}
"""


def mesh_object(body: str, name: str = "m") -> str:
    """Wrap mesh sub-blocks into a complete *GEOMOBJECT"""
    return f'*GEOMOBJECT {{\n*NODE_NAME "{name}"\n*MESH {{\n{body}\n}}\n}}\n'
