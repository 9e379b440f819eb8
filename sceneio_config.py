"""
sceneio Import Settings
"""

from dataclasses import dataclass
from typing import Optional

# File format versions written into *3DSMAX_ASCIIEXPORT
ASE_OLD_FILE_FORMAT = 110
ASE_NEW_FILE_FORMAT = 200

MAX_TEXTURE_COORDS = 8
MAX_COLOR_SETS = 8


@dataclass
class ImportSettings:
    # Echo warnings and info messages with print()
    verbose: bool = True
    # Forces the ASE file format version instead of guessing from the extension
    ase_format_version: Optional[int] = None
    # Build normals from smoothing groups when a mesh has no *MESH_NORMALS block
    generate_smooth_normals: bool = True
    max_texture_coords: int = MAX_TEXTURE_COORDS
    max_color_sets: int = MAX_COLOR_SETS


def default_ase_format(path: str) -> int:
    """Guess the ASE file format from the file extension (.asc is the old format)"""
    if path.lower().endswith('.asc'):
        return ASE_OLD_FILE_FORMAT
    return ASE_NEW_FILE_FORMAT
