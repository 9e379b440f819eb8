"""
sceneio ASE Section Parser
Resilient reader for the ASCII scene export format (.ase, .ask, .asc).

The file is a tree of brace-delimited sections introduced by '*' keywords. Every
nesting level is one handler with its own keyword table; all handlers share one loop
that tracks brace depth, counts lines and decides what end of input means at that
level. Field-level problems are warnings with a fallback value. Running out of input
inside a nested section is the only fatal error.
"""

import re
from typing import Callable, List, Optional, Sequence, Tuple

from sceneio_ase_types import (
    Animation, BaseNode, BoneVertex, Camera, CameraType, Dummy, Face, InterpolationKind,
    Light, LightType, Material, Mesh, ShadingMode, Texture, Bone,
)
from sceneio_config import ASE_NEW_FILE_FORMAT, MAX_TEXTURE_COORDS
from sceneio_diagnostics import DiagnosticSink, ErrorKind
from sceneio_scanner import (
    CR, LF, NUL, is_digit, is_line_end, is_space_or_line_end, peek, prefix_match_nocase,
    read_float, read_signed_int, read_unsigned_int, skip_spaces, token_match,
)

STAR = ord('*')
LBRACE = ord('{')
RBRACE = ord('}')
QUOTE = ord('"')
COLON = ord(':')
COMMA = ord(',')

# Bytes the section loop has to look at; everything else is skipped in one jump
_SECTION_SPECIAL = re.compile(rb'[*{}\x00\r\n]')

# (keyword, action) or (keyword, action, predicate)
KeywordTable = Sequence[tuple]

SMOOTHING_GROUP_LIMIT = 32


def _resize(items: list, count: int, factory: Callable[[], object]) -> None:
    """Resize a list in place, keeping existing entries"""
    del items[count:]
    items.extend(factory() for _ in range(count - len(items)))


class AseParser:
    """Parses one ASE buffer into materials, meshes, dummies, lights and cameras"""

    def __init__(self, buffer: bytes, sink: Optional[DiagnosticSink] = None,
                 file_format: int = ASE_NEW_FILE_FORMAT,
                 max_texture_coords: int = MAX_TEXTURE_COORDS):
        self.buf = buffer
        self.pos = 0
        self.end = len(buffer)
        self.line = 1
        self.sink = sink if sink is not None else DiagnosticSink()
        self.file_format = file_format
        self.max_texture_coords = min(max_texture_coords, MAX_TEXTURE_COORDS)

        self.materials: List[Material] = []
        self.meshes: List[Mesh] = []
        self.dummies: List[Dummy] = []
        self.lights: List[Light] = []
        self.cameras: List[Camera] = []
        self.comments: List[str] = []

        self.background_color: Optional[Tuple[float, float, float]] = None
        self.ambient_color: Optional[Tuple[float, float, float]] = None
        self.first_frame = 0
        self.last_frame = 0
        self.frame_speed = 30
        self.ticks_per_frame = 1

    @property
    def is_old_format(self) -> bool:
        return self.file_format < ASE_NEW_FILE_FORMAT

    # ------------------------------------------------------------------
    # diagnostics

    def warn(self, message: str, kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
        self.sink.warn(self.line, message, kind)

    def info(self, message: str) -> None:
        self.sink.info(self.line, message)

    # ------------------------------------------------------------------
    # cursor movement and line counting

    def _cur(self) -> int:
        return peek(self.buf, self.pos, self.end)

    def _count(self, i: int) -> None:
        """Count the line end at buf[i]; the LF of a CRLF pair belongs to its CR"""
        c = self.buf[i]
        if c == CR or (c == LF and (i == 0 or self.buf[i - 1] != CR)):
            self.line += 1

    def _move_to(self, new_pos: int) -> None:
        """Advance to new_pos, counting every line end passed on the way"""
        new_pos = min(new_pos, self.end)
        for i in range(self.pos, new_pos):
            self._count(i)
        self.pos = new_pos

    def _step(self) -> None:
        """Advance past the current byte, jumping over runs of ordinary bytes"""
        c = self._cur()
        if self.pos >= self.end:
            return
        if c in (CR, LF):
            self._count(self.pos)
            self.pos += 1
            return
        match = _SECTION_SPECIAL.search(self.buf, self.pos + 1, self.end)
        self.pos = match.start() if match else self.end

    def skip_to_next_token(self) -> bool:
        """Move to the next '*', '{' or '}'. Returns False at end of input."""
        while True:
            c = self._cur()
            if self.pos >= self.end or c == NUL:
                return False
            if c in (STAR, LBRACE, RBRACE):
                return True
            self._step()

    def skip_section(self) -> bool:
        """Discard a whole section including nested ones"""
        depth = 0
        while True:
            c = self._cur()
            if c == RBRACE:
                depth -= 1
                if depth <= 0:
                    self.pos += 1
                    self.skip_to_next_token()
                    return True
            elif c == LBRACE:
                depth += 1
            elif c == NUL:
                self.warn("Unable to parse block: Unexpected EOF, closing bracket '}' was expected",
                          ErrorKind.STRUCTURAL_EOF)
                return False
            self._step()

    def _skip_spaces_and_line_end(self) -> bool:
        pos = self.pos
        while pos < self.end and self.buf[pos] in b' \t\r\n\f':
            pos += 1
        self._move_to(pos)
        return self.pos < self.end and self.buf[self.pos] != NUL

    def _skip_line(self) -> None:
        pos = self.pos
        while pos < self.end and not is_line_end(self.buf[pos]):
            pos += 1
        while pos < self.end and self.buf[pos] in (CR, LF):
            pos += 1
        self._move_to(pos)

    # ------------------------------------------------------------------
    # section loop shared by all levels

    def _dispatch(self, table: KeywordTable) -> bool:
        for entry in table:
            if len(entry) > 2 and not entry[2]():
                continue
            matched, pos = token_match(self.buf, self.pos, self.end, entry[0])
            if matched:
                self.pos = pos
                entry[1]()
                return True
        return False

    def _run_section(self, table: KeywordTable, section: Optional[str] = None,
                     level: Optional[int] = None,
                     on_unknown: Optional[Callable[[int], bool]] = None) -> None:
        """Keyword loop for one nesting level.

        section is None for levels where end of input simply ends parsing; for all
        other levels it names the section in the fatal message.
        """
        depth = 0
        while True:
            if self._cur() == STAR:
                self.pos += 1
                if self._dispatch(table):
                    continue
                if on_unknown is not None and on_unknown(depth):
                    self.pos -= 1
                    return
            c = self._cur()
            if c == LBRACE:
                depth += 1
            elif c == RBRACE:
                depth -= 1
                if depth == 0:
                    self.pos += 1
                    self.skip_to_next_token()
                    return
            elif c == NUL:
                if section is None:
                    return
                self.sink.fatal(self.line, f"Encountered unexpected EOL while parsing a {section} "
                                           f"chunk (Level {level})")
            self._step()

    # ------------------------------------------------------------------
    # field readers

    def parse_string(self, name: str) -> Optional[str]:
        """Read a double-quoted string. Returns None (with a warning) if malformed."""
        ok, self.pos = skip_spaces(self.buf, self.pos, self.end)
        if not ok:
            self.warn(f"Unable to parse {name} block: Unexpected EOL")
            return None
        if self._cur() != QUOTE:
            self.warn(f"Unable to parse {name} block: Strings are expected "
                      "to be enclosed in double quotation marks")
            return None
        start = self.pos + 1
        close = start
        while close < self.end and self.buf[close] not in (QUOTE, NUL):
            close += 1
        if peek(self.buf, close, self.end) != QUOTE:
            self.warn(f"Unable to parse {name} block: Strings are expected to be enclosed in "
                      "double quotation marks but EOF was reached before a closing quotation "
                      "mark was encountered")
            return None
        value = self.buf[start:close].decode('latin-1')
        self._move_to(close + 1)
        return value

    def read_int(self) -> int:
        ok, self.pos = skip_spaces(self.buf, self.pos, self.end)
        if not ok:
            self.warn("Unable to parse long: unexpected EOL")
            return 0
        start = self.pos
        value, self.pos = read_unsigned_int(self.buf, self.pos, self.end)
        if self.pos == start:
            self.warn("Unable to parse long: number expected")
        return value

    def read_float(self) -> float:
        ok, self.pos = skip_spaces(self.buf, self.pos, self.end)
        if not ok:
            self.warn("Unable to parse float: unexpected EOL")
            return 0.0
        start = self.pos
        value, self.pos = read_float(self.buf, self.pos, self.end)
        if self.pos == start:
            self.warn("Unable to parse float: number expected")
        return value

    def read_triple(self) -> Tuple[float, float, float]:
        return (self.read_float(), self.read_float(), self.read_float())

    def read_int_triple(self) -> Tuple[int, int, int]:
        return (self.read_int(), self.read_int(), self.read_int())

    def read_indexed_triple(self) -> Tuple[int, Tuple[float, float, float]]:
        index = self.read_int()
        return index, self.read_triple()

    def read_indexed_int_triple(self) -> Tuple[int, Tuple[int, int, int]]:
        index = self.read_int()
        return index, self.read_int_triple()

    # ------------------------------------------------------------------
    # top level

    def parse(self) -> None:
        """Parse the whole buffer. End of input at this level is not an error."""
        table = (
            (b'3DSMAX_ASCIIEXPORT', self._parse_format_version),
            (b'SCENE', self._parse_scene_block),
            # groups carry no data of their own, their content is read in place
            (b'GROUP', self.parse),
            (b'MATERIAL_LIST', self._parse_material_list_block),
            (b'GEOMOBJECT', lambda: self._parse_object_block(self._add(self.meshes, Mesh()))),
            (b'HELPEROBJECT', lambda: self._parse_object_block(self._add(self.dummies, Dummy()))),
            (b'LIGHTOBJECT', lambda: self._parse_object_block(self._add(self.lights, Light()))),
            (b'CAMERAOBJECT', lambda: self._parse_object_block(self._add(self.cameras, Camera()))),
            (b'COMMENT', self._parse_comment),
            (b'MESH_SOFTSKINVERTS', self._parse_soft_skin_block, lambda: self.is_old_format),
        )
        self._run_section(table)

    @staticmethod
    def _add(items: list, node: BaseNode) -> BaseNode:
        items.append(node)
        return node

    def _parse_format_version(self) -> None:
        fmt = self.read_int()
        if fmt > 200:
            self.warn("Unknown file format version: *3DSMAX_ASCIIEXPORT should be <= 200",
                      ErrorKind.UNKNOWN_ENUM)
        # some files carry no version number, keep the guess from the extension then
        if fmt:
            self.file_format = fmt

    def _parse_comment(self) -> None:
        text = self.parse_string('*COMMENT')
        if text is None:
            text = '<unknown>'
        self.comments.append(text)
        self.info(f"Comment: {text}")

    def _parse_scene_block(self) -> None:
        def background():
            self.background_color = self.read_triple()

        def ambient():
            self.ambient_color = self.read_triple()

        def first_frame():
            self.first_frame = self.read_int()

        def last_frame():
            self.last_frame = self.read_int()

        def frame_speed():
            self.frame_speed = self.read_int()

        def ticks_per_frame():
            self.ticks_per_frame = self.read_int()

        self._run_section((
            (b'SCENE_BACKGROUND_STATIC', background),
            (b'SCENE_AMBIENT_STATIC', ambient),
            (b'SCENE_FIRSTFRAME', first_frame),
            (b'SCENE_LASTFRAME', last_frame),
            (b'SCENE_FRAMESPEED', frame_speed),
            (b'SCENE_TICKSPERFRAME', ticks_per_frame),
        ))

    # ------------------------------------------------------------------
    # materials

    def _parse_material_list_block(self) -> None:
        old_count = len(self.materials)
        state = {'count': 0}

        def material_count():
            state['count'] = self.read_int()
            _resize(self.materials, old_count + state['count'], lambda: Material('INVALID'))

        def material():
            # files without *MATERIAL_COUNT are read as if it were 1
            if state['count'] == 0:
                self.warn("*MATERIAL_COUNT unspecified or 0")
                state['count'] = 1
                _resize(self.materials, old_count + 1, lambda: Material('INVALID'))
            index = self.read_int()
            if index >= state['count']:
                self.warn("Out of range: material index is too large", ErrorKind.OUT_OF_RANGE_INDEX)
                index = state['count'] - 1
            self._parse_material_block(self.materials[old_count + index])

        def missing_brace(depth: int) -> bool:
            # exporters that forget the closing brace of the list
            if depth == 1:
                self.warn("Missing closing brace in material list")
                return True
            return False

        self._run_section((
            (b'MATERIAL_COUNT', material_count),
            (b'MATERIAL', material),
        ), on_unknown=missing_brace)

    def _parse_material_block(self, mat: Material) -> None:
        state = {'num_sub': 0}

        def name():
            value = self.parse_string('*MATERIAL_NAME')
            if value is None:
                self.skip_to_next_token()
            else:
                mat.name = value

        def color(attr):
            def read():
                setattr(mat, attr, self.read_triple())
            return read

        def shading():
            for keyword, mode in ((b'Blinn', ShadingMode.BLINN), (b'Phong', ShadingMode.PHONG),
                                  (b'Flat', ShadingMode.FLAT), (b'Wire', ShadingMode.WIRE),
                                  (b'Gouraud', ShadingMode.GOURAUD)):
                matched, self.pos = token_match(self.buf, self.pos, self.end, keyword)
                if matched:
                    mat.shading = mode
                    return
            self.warn("Unknown shading mode, assuming Gouraud", ErrorKind.UNKNOWN_ENUM)
            mat.shading = ShadingMode.GOURAUD
            self.skip_to_next_token()

        def transparency():
            mat.transparency = 1.0 - self.read_float()

        def self_illumination():
            f = self.read_float()
            mat.emissive = (f, f, f)

        def shine():
            mat.shininess = self.read_float() * 15

        def two_sided():
            mat.two_sided = True

        def shine_strength():
            mat.shininess_strength = self.read_float()

        def map_slot(slot):
            return lambda: self._parse_map_block(mat.maps[slot])

        def num_submaterials():
            state['num_sub'] = self.read_int()
            _resize(mat.submaterials, state['num_sub'], lambda: Material('INVALID SUBMATERIAL'))

        def submaterial():
            if state['num_sub'] == 0:
                self.warn("*NUMSUBMTLS unspecified or 0")
                state['num_sub'] = 1
                _resize(mat.submaterials, 1, lambda: Material('INVALID SUBMATERIAL'))
            index = self.read_int()
            if index >= state['num_sub']:
                self.warn("Out of range: submaterial index is too large",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                index = state['num_sub'] - 1
            self._parse_material_block(mat.submaterials[index])

        self._run_section((
            (b'MATERIAL_NAME', name),
            (b'MATERIAL_AMBIENT', color('ambient')),
            (b'MATERIAL_DIFFUSE', color('diffuse')),
            (b'MATERIAL_SPECULAR', color('specular')),
            (b'MATERIAL_SHADING', shading),
            (b'MATERIAL_TRANSPARENCY', transparency),
            (b'MATERIAL_SELFILLUM', self_illumination),
            (b'MATERIAL_SHINE', shine),
            (b'MATERIAL_TWOSIDED', two_sided),
            (b'MATERIAL_SHINESTRENGTH', shine_strength),
            (b'MAP_DIFFUSE', map_slot('diffuse')),
            (b'MAP_AMBIENT', map_slot('ambient')),
            (b'MAP_SPECULAR', map_slot('specular')),
            (b'MAP_OPACITY', map_slot('opacity')),
            (b'MAP_SELFILLUM', map_slot('emissive')),
            (b'MAP_BUMP', map_slot('bump')),
            (b'MAP_SHINESTRENGTH', map_slot('shininess')),
            (b'NUMSUBMTLS', num_submaterials),
            (b'SUBMATERIAL', submaterial),
        ), '*MATERIAL', 2)

    def _parse_map_block(self, tex: Texture) -> None:
        # *BITMAP is only meaningful for bitmap maps; other classes keep the slot
        # but leave the path empty
        state = {'parse_path': True}

        def map_class():
            value = self.parse_string('*MAP_CLASS')
            if value is None:
                self.skip_to_next_token()
                value = ''
            if value not in ('Bitmap', 'Normal Bump'):
                self.warn(f"Skipping unknown map type: {value}", ErrorKind.UNKNOWN_ENUM)
                state['parse_path'] = False

        def bitmap():
            value = self.parse_string('*BITMAP')
            if value is None:
                self.skip_to_next_token()
                return
            if value == 'None':
                self.warn("Skipping invalid map entry")
                value = ''
            tex.path = value

        def scalar(attr):
            def read():
                setattr(tex, attr, self.read_float())
            return read

        self._run_section((
            (b'MAP_CLASS', map_class),
            (b'BITMAP', bitmap, lambda: state['parse_path']),
            (b'UVW_U_OFFSET', scalar('offset_u')),
            (b'UVW_V_OFFSET', scalar('offset_v')),
            (b'UVW_U_TILING', scalar('scale_u')),
            (b'UVW_V_TILING', scalar('scale_v')),
            (b'UVW_ANGLE', scalar('rotation')),
            (b'MAP_AMOUNT', scalar('blend')),
        ), '*MAP_XXXXXX', 3)

    # ------------------------------------------------------------------
    # objects

    def _parse_object_block(self, node: BaseNode) -> None:
        def name():
            value = self.parse_string('*NODE_NAME')
            if value is None:
                self.skip_to_next_token()
            else:
                node.name = value

        def parent():
            value = self.parse_string('*NODE_PARENT')
            if value is None:
                self.skip_to_next_token()
            else:
                node.parent = value

        table = [
            (b'NODE_NAME', name),
            (b'NODE_PARENT', parent),
            (b'NODE_TM', lambda: self._parse_node_transform_block(node)),
            (b'TM_ANIMATION', lambda: self._parse_animation_block(node)),
        ]

        if isinstance(node, Light):
            def light_type():
                for word, kind in ((b'omni', LightType.OMNI), (b'target', LightType.TARGET),
                                   (b'free', LightType.FREE),
                                   (b'directional', LightType.DIRECTIONAL)):
                    if prefix_match_nocase(self.buf, self.pos, self.end, word):
                        node.light_type = kind
                        return
                self.warn("Unknown kind of light source", ErrorKind.UNKNOWN_ENUM)

            table += [
                (b'LIGHT_SETTINGS', lambda: self._parse_light_settings_block(node)),
                (b'LIGHT_TYPE', light_type),
            ]
        elif isinstance(node, Camera):
            def camera_type():
                if prefix_match_nocase(self.buf, self.pos, self.end, b'target'):
                    node.camera_type = CameraType.TARGET
                elif prefix_match_nocase(self.buf, self.pos, self.end, b'free'):
                    node.camera_type = CameraType.FREE
                else:
                    self.warn("Unknown kind of camera", ErrorKind.UNKNOWN_ENUM)

            table += [
                (b'CAMERA_SETTINGS', lambda: self._parse_camera_settings_block(node)),
                (b'CAMERA_TYPE', camera_type),
            ]
        elif isinstance(node, Mesh):
            def material_ref():
                node.material_index = self.read_int()

            table += [
                (b'MESH', lambda: self._parse_mesh_block(node)),
                # older exporters
                (b'MESH_SOFTSKIN', lambda: self._parse_mesh_block(node)),
                (b'MATERIAL_REF', material_ref),
            ]

        self._run_section(table)

    def _parse_camera_settings_block(self, camera: Camera) -> None:
        def scalar(attr):
            def read():
                setattr(camera, attr, self.read_float())
            return read

        self._run_section((
            (b'CAMERA_NEAR', scalar('near')),
            (b'CAMERA_FAR', scalar('far')),
            (b'CAMERA_FOV', scalar('fov')),
        ), 'CAMERA_SETTINGS', 2)

    def _parse_light_settings_block(self, light: Light) -> None:
        def color():
            light.color = self.read_triple()

        def scalar(attr):
            def read():
                setattr(light, attr, self.read_float())
            return read

        self._run_section((
            (b'LIGHT_COLOR', color),
            (b'LIGHT_INTENS', scalar('intensity')),
            (b'LIGHT_HOTSPOT', scalar('hotspot')),
            (b'LIGHT_FALLOFF', scalar('falloff')),
        ), 'LIGHT_SETTINGS', 2)

    def _parse_node_transform_block(self, node: BaseNode) -> None:
        # mode 0: rows ignored, 1: the node's own transform, 2: its target
        state = {'mode': 0}

        def name():
            value = self.parse_string('*NODE_NAME')
            if value is None:
                self.skip_to_next_token()
                return
            s = value.find('.Target')
            if value == node.name:
                state['mode'] = 1
            elif s != -1 and value[:s] == node.name:
                if node.is_target:
                    state['mode'] = 2
                else:
                    self.warn("Ignoring target transform, this is no spot light or target camera",
                              ErrorKind.UNRESOLVED_REFERENCE)
            else:
                self.warn(f"Unknown node transformation: {value}", ErrorKind.UNRESOLVED_REFERENCE)
                state['mode'] = 0

        def row(index):
            def read():
                values = self.read_triple()
                if state['mode'] == 2:
                    node.target_position = values
                else:
                    node.set_transform_row(index, values)
            return read

        def inherit(attr):
            def read():
                values = self.read_int_triple()
                setattr(node, attr, tuple(v != 0 for v in values))
            return read

        own = lambda: state['mode'] == 1
        self._run_section((
            (b'NODE_NAME', name),
            # the translation row is all a target needs
            (b'TM_ROW3', row(3), lambda: state['mode'] != 0),
            (b'TM_ROW0', row(0), own),
            (b'TM_ROW1', row(1), own),
            (b'TM_ROW2', row(2), own),
            (b'INHERIT_POS', inherit('inherit_position'), own),
            (b'INHERIT_ROT', inherit('inherit_rotation'), own),
            (b'INHERIT_SCL', inherit('inherit_scaling'), own),
        ), '*NODE_TM', 2)

    # ------------------------------------------------------------------
    # animation

    def _parse_animation_block(self, node: BaseNode) -> None:
        state = {'anim': node.anim}

        def name():
            value = self.parse_string('*NODE_NAME')
            if value is None:
                self.skip_to_next_token()
                return
            # a ".Target" channel animates the aim point of a camera or spot light
            if '.Target' in value:
                if node.is_target:
                    state['anim'] = node.target_anim
                else:
                    self.warn("Found target animation channel but the node is neither a "
                              "camera nor a spot light", ErrorKind.UNRESOLVED_REFERENCE)
                    state['anim'] = None

        def position():
            if state['anim'] is None:
                self.skip_section()
            else:
                self._parse_position_track(state['anim'])

        def own_channel(channel):
            def parse():
                anim = state['anim']
                if anim is None or anim is node.target_anim:
                    self.warn(f"Ignoring {channel} channel in target animation",
                              ErrorKind.UNRESOLVED_REFERENCE)
                    self.skip_section()
                elif channel == 'scaling':
                    self._parse_scaling_track(anim)
                else:
                    self._parse_rotation_track(anim)
            return parse

        # targets only carry a position track
        scaling = own_channel('scaling')
        rotation = own_channel('rotation')
        self._run_section((
            (b'NODE_NAME', name),
            (b'CONTROL_POS_TRACK', position),
            (b'CONTROL_POS_BEZIER', position),
            (b'CONTROL_POS_TCB', position),
            (b'CONTROL_SCALE_TRACK', scaling),
            (b'CONTROL_SCALE_BEZIER', scaling),
            (b'CONTROL_SCALE_TCB', scaling),
            (b'CONTROL_ROT_TRACK', rotation),
            (b'CONTROL_ROT_BEZIER', rotation),
            (b'CONTROL_ROT_TCB', rotation),
        ), 'TM_ANIMATION', 2)

    def _vector_track(self, anim: Animation, keys: list, kind_attr: str,
                      keywords: Sequence[Tuple[bytes, InterpolationKind]], section: str) -> None:
        # tangents and TCB parameters that follow the value are not read
        def key(kind):
            def read():
                setattr(anim, kind_attr, kind)
                index, value = self.read_indexed_triple()
                keys.append((float(index), value))
            return read

        self._run_section([(keyword, key(kind)) for keyword, kind in keywords], section, 3)

    def _parse_position_track(self, anim: Animation) -> None:
        self._vector_track(anim, anim.position_keys, 'position_kind', (
            (b'CONTROL_POS_SAMPLE', InterpolationKind.TRACK),
            (b'CONTROL_BEZIER_POS_KEY', InterpolationKind.BEZIER),
            (b'CONTROL_TCB_POS_KEY', InterpolationKind.TCB),
        ), '*CONTROL_POS_TRACK')

    def _parse_scaling_track(self, anim: Animation) -> None:
        self._vector_track(anim, anim.scaling_keys, 'scaling_kind', (
            (b'CONTROL_SCALE_SAMPLE', InterpolationKind.TRACK),
            (b'CONTROL_BEZIER_SCALE_KEY', InterpolationKind.BEZIER),
            (b'CONTROL_TCB_SCALE_KEY', InterpolationKind.TCB),
        ), '*CONTROL_SCALE_TRACK')

    def _parse_rotation_track(self, anim: Animation) -> None:
        def key(kind):
            def read():
                anim.rotation_kind = kind
                index, axis = self.read_indexed_triple()
                angle = self.read_float()
                anim.rotation_keys.append((float(index), (axis[0], axis[1], axis[2], angle)))
            return read

        self._run_section((
            (b'CONTROL_ROT_SAMPLE', key(InterpolationKind.TRACK)),
            (b'CONTROL_BEZIER_ROT_KEY', key(InterpolationKind.BEZIER)),
            (b'CONTROL_TCB_ROT_KEY', key(InterpolationKind.TCB)),
        ), '*CONTROL_ROT_TRACK', 3)

    # ------------------------------------------------------------------
    # mesh geometry

    def _parse_mesh_block(self, mesh: Mesh) -> None:
        counts = {'vertices': 0, 'faces': 0, 'tvertices': 0, 'tfaces': 0,
                  'cvertices': 0, 'cfaces': 0}

        def count(key):
            def read():
                counts[key] = self.read_int()
            return read

        def mapping_channel():
            index = self.read_int()
            if index < 2:
                self.warn("Mapping channel has an invalid index. Skipping UV channel",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                self.skip_section()
            elif index > self.max_texture_coords:
                self.warn("Too many UV channels specified. Skipping channel ..",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                self.skip_section()
            else:
                self._parse_mapping_channel(index - 1, mesh)

        def mesh_animation():
            self.warn("Found *MESH_ANIMATION element in ASE/ASK file. Keyframe animation "
                      "is not supported, this element will be ignored", ErrorKind.UNKNOWN_ENUM)

        self._run_section((
            (b'MESH_NUMVERTEX', count('vertices')),
            (b'MESH_NUMTVERTEX', count('tvertices')),
            (b'MESH_NUMCVERTEX', count('cvertices')),
            (b'MESH_NUMFACES', count('faces')),
            (b'MESH_NUMTVFACES', count('tfaces')),
            (b'MESH_NUMCVFACES', count('cfaces')),
            (b'MESH_VERTEX_LIST', lambda: self._parse_vertex_list(counts['vertices'], mesh)),
            (b'MESH_FACE_LIST', lambda: self._parse_face_list(counts['faces'], mesh)),
            (b'MESH_TVERTLIST', lambda: self._parse_tvert_list(counts['tvertices'], mesh, 0)),
            (b'MESH_TFACELIST', lambda: self._parse_tface_list(counts['tfaces'], mesh, 0)),
            (b'MESH_CVERTLIST', lambda: self._parse_cvert_list(counts['cvertices'], mesh)),
            (b'MESH_CFACELIST', lambda: self._parse_cface_list(counts['cfaces'], mesh)),
            (b'MESH_NORMALS', lambda: self._parse_normal_list(mesh)),
            (b'MESH_MAPPINGCHANNEL', mapping_channel),
            (b'MESH_ANIMATION', mesh_animation),
            (b'MESH_WEIGHTS', lambda: self._parse_weights_block(mesh)),
        ), '*MESH', 2)

    def _parse_mapping_channel(self, channel: int, mesh: Mesh) -> None:
        counts = {'tvertices': 0, 'tfaces': 0}

        def count(key):
            def read():
                counts[key] = self.read_int()
            return read

        self._run_section((
            (b'MESH_NUMTVERTEX', count('tvertices')),
            (b'MESH_NUMTVFACES', count('tfaces')),
            (b'MESH_TVERTLIST', lambda: self._parse_tvert_list(counts['tvertices'], mesh, channel)),
            (b'MESH_TFACELIST', lambda: self._parse_tface_list(counts['tfaces'], mesh, channel)),
        ), '*MESH_MAPPING_CHANNEL', 3)

    def _parse_vertex_list(self, num_vertices: int, mesh: Mesh) -> None:
        _resize(mesh.positions, num_vertices, lambda: (0.0, 0.0, 0.0))

        def vertex():
            index, value = self.read_indexed_triple()
            if index >= num_vertices:
                self.warn("Invalid vertex index. It will be ignored", ErrorKind.OUT_OF_RANGE_INDEX)
            else:
                mesh.positions[index] = value

        self._run_section(((b'MESH_VERTEX', vertex),), '*MESH_VERTEX_LIST', 3)

    def _parse_face_list(self, num_faces: int, mesh: Mesh) -> None:
        _resize(mesh.faces, num_faces, Face)

        def face():
            parsed = self.parse_face()
            if parsed is None:
                return
            if parsed.face_index >= num_faces:
                self.warn("Face has an invalid index. It will be ignored",
                          ErrorKind.OUT_OF_RANGE_INDEX)
            else:
                mesh.faces[parsed.face_index] = parsed

        self._run_section(((b'MESH_FACE', face),), '*MESH_FACE_LIST', 3)

    def _parse_tvert_list(self, num_vertices: int, mesh: Mesh, channel: int) -> None:
        coords = mesh.tex_coords[channel]
        _resize(coords, num_vertices, lambda: (0.0, 0.0, 0.0))

        def tvert():
            index, value = self.read_indexed_triple()
            if index >= num_vertices:
                self.warn("Tvertex has an invalid index. It will be ignored",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                return
            coords[index] = value
            if value[2] != 0.0:
                # w is used, keep three components for this channel
                mesh.num_uv_components[channel] = 3

        self._run_section(((b'MESH_TVERT', tvert),), '*MESH_TVERT_LIST', 3)

    def _parse_tface_list(self, num_faces: int, mesh: Mesh, channel: int) -> None:
        def tface():
            index, values = self.read_indexed_int_triple()
            if index >= num_faces or index >= len(mesh.faces):
                self.warn("UV-Face has an invalid index. It will be ignored",
                          ErrorKind.OUT_OF_RANGE_INDEX)
            else:
                mesh.faces[index].uv_indices[channel] = list(values)

        self._run_section(((b'MESH_TFACE', tface),), '*MESH_TFACE_LIST', 3)

    def _parse_cvert_list(self, num_vertices: int, mesh: Mesh) -> None:
        _resize(mesh.vertex_colors, num_vertices, lambda: (0.0, 0.0, 0.0, 1.0))

        def vertcol():
            index, value = self.read_indexed_triple()
            if index >= num_vertices:
                self.warn("Vertex color has an invalid index. It will be ignored",
                          ErrorKind.OUT_OF_RANGE_INDEX)
            else:
                mesh.vertex_colors[index] = (value[0], value[1], value[2], 1.0)

        self._run_section(((b'MESH_VERTCOL', vertcol),), '*MESH_CVERTEX_LIST', 3)

    def _parse_cface_list(self, num_faces: int, mesh: Mesh) -> None:
        def cface():
            index, values = self.read_indexed_int_triple()
            if index >= num_faces or index >= len(mesh.faces):
                self.warn("Color-Face has an invalid index. It will be ignored",
                          ErrorKind.OUT_OF_RANGE_INDEX)
            else:
                mesh.faces[index].color_indices = list(values)

        self._run_section(((b'MESH_CFACE', cface),), '*MESH_CFACE_LIST', 3)

    def _parse_normal_list(self, mesh: Mesh) -> None:
        # face and vertex normals are summed per face corner, renormalized later
        _resize(mesh.normals, len(mesh.faces) * 3, lambda: [0.0, 0.0, 0.0])
        state = {'face': None}

        def add(slot, value):
            normal = mesh.normals[slot]
            for i in range(3):
                normal[i] += value[i]

        def vertex_normal():
            index, value = self.read_indexed_triple()
            face_index = state['face']
            if face_index >= len(mesh.faces):
                return
            face = mesh.faces[face_index]
            if index not in face.indices:
                self.warn("Invalid vertex index in MESH_VERTEXNORMAL section",
                          ErrorKind.UNRESOLVED_REFERENCE)
                return
            add(face_index * 3 + face.indices.index(index), value)

        def face_normal():
            index, value = self.read_indexed_triple()
            state['face'] = index
            if index >= len(mesh.faces):
                self.warn("Invalid face index in MESH_FACENORMAL section",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                return
            for corner in range(3):
                add(index * 3 + corner, value)

        self._run_section((
            (b'MESH_VERTEXNORMAL', vertex_normal, lambda: state['face'] is not None),
            (b'MESH_FACENORMAL', face_normal),
        ), '*MESH_NORMALS', 3)

    def parse_face(self) -> Optional[Face]:
        """Read '<n>: A: <i> B: <i> C: <i> ... [*MESH_SMOOTHING g,g] [*MESH_MTLID m]'.

        Returns None when the record is unusable; a warning has been issued then.
        """
        face = Face()
        buf, end = self.buf, self.end

        ok, self.pos = skip_spaces(buf, self.pos, end)
        if not ok:
            self.warn("Unable to parse *MESH_FACE Element: Unexpected EOL [#1]")
            self.skip_to_next_token()
            return None
        face.face_index, self.pos = read_unsigned_int(buf, self.pos, end)

        ok, self.pos = skip_spaces(buf, self.pos, end)
        if not ok:
            self.warn("Unable to parse *MESH_FACE Element: Unexpected EOL. ':' expected [#2]")
            self.skip_to_next_token()
            return None
        # some exporters omit the colon after the face index
        if self._cur() == COLON:
            self.pos += 1

        for _ in range(3):
            ok, self.pos = skip_spaces(buf, self.pos, end)
            if not ok:
                self.warn("Unable to parse *MESH_FACE Element: Unexpected EOL")
                self.skip_to_next_token()
                return None
            label = chr(self._cur()).upper()
            if label not in 'ABC' or self._cur() == NUL:
                self.warn("Unable to parse *MESH_FACE Element: Unexpected EOL. "
                          "A,B or C expected [#3]")
                self.skip_to_next_token()
                return None
            slot = 'ABC'.index(label)
            self.pos += 1

            ok, self.pos = skip_spaces(buf, self.pos, end)
            if not ok or self._cur() != COLON:
                self.warn("Unable to parse *MESH_FACE Element: Unexpected EOL. ':' expected [#2]")
                self.skip_to_next_token()
                return None
            self.pos += 1

            ok, self.pos = skip_spaces(buf, self.pos, end)
            if not ok:
                self.warn("Unable to parse *MESH_FACE Element: Unexpected EOL. "
                          "Vertex index expected [#4]")
                self.skip_to_next_token()
                return None
            face.indices[slot], self.pos = read_unsigned_int(buf, self.pos, end)

        # skip the AB, BC and CA edge flags
        if not self._seek_inline_keyword():
            return face

        matched, self.pos = token_match(buf, self.pos, end, b'*MESH_SMOOTHING')
        if matched:
            ok, self.pos = skip_spaces(buf, self.pos, end)
            if not ok:
                self.warn("Unable to parse *MESH_SMOOTHING Element: Unexpected EOL. "
                          "Smoothing group(s) expected [#5]")
                self.skip_to_next_token()
                return face
            # the list may also be empty
            while True:
                if is_digit(self._cur()):
                    value, self.pos = read_unsigned_int(buf, self.pos, end)
                    if value < SMOOTHING_GROUP_LIMIT:
                        face.smoothing_groups |= 1 << value
                    else:
                        self.warn(f"Unable to set smooth group, value with {value} out of range",
                                  ErrorKind.OUT_OF_RANGE_INDEX)
                _, self.pos = skip_spaces(buf, self.pos, end)
                if self._cur() != COMMA:
                    break
                self.pos += 1
                _, self.pos = skip_spaces(buf, self.pos, end)

        if not self._seek_inline_keyword():
            return face

        matched, self.pos = token_match(buf, self.pos, end, b'*MESH_MTLID')
        if matched:
            ok, self.pos = skip_spaces(buf, self.pos, end)
            if not ok:
                self.warn("Unable to parse *MESH_MTLID Element: Unexpected EOL. "
                          "Material index expected [#6]")
                self.skip_to_next_token()
                return face
            face.material, self.pos = read_unsigned_int(buf, self.pos, end)
        return face

    def _seek_inline_keyword(self) -> bool:
        """Move to the next '*' on the current line. False if the line ends first."""
        while True:
            c = self._cur()
            if c == STAR:
                return True
            if is_line_end(c):
                return False
            self.pos += 1

    # ------------------------------------------------------------------
    # bone weights

    def _parse_weights_block(self, mesh: Mesh) -> None:
        counts = {'vertices': 0, 'bones': 0}

        def count(key):
            def read():
                counts[key] = self.read_int()
            return read

        self._run_section((
            (b'MESH_NUMVERTEX', count('vertices')),
            (b'MESH_NUMBONE', count('bones')),
            (b'MESH_BONE_LIST', lambda: self._parse_bone_list(counts['bones'], mesh)),
            (b'MESH_BONE_VERTEX_LIST',
             lambda: self._parse_bone_vertex_list(counts['vertices'], mesh)),
        ), '*MESH_WEIGHTS', 3)

    def _parse_bone_list(self, num_bones: int, mesh: Mesh) -> None:
        _resize(mesh.bones, num_bones, lambda: Bone('UNNAMED'))

        def bone_name():
            ok, self.pos = skip_spaces(self.buf, self.pos, self.end)
            if not ok:
                self.warn("Unable to parse *MESH_BONE_NAME: Unexpected EOL")
                return
            index, self.pos = read_unsigned_int(self.buf, self.pos, self.end)
            if index >= num_bones:
                self.warn("Bone index is out of bounds", ErrorKind.OUT_OF_RANGE_INDEX)
                return
            value = self.parse_string('*MESH_BONE_NAME')
            if value is None:
                self.skip_to_next_token()
            else:
                mesh.bones[index].name = value

        self._run_section(((b'MESH_BONE_NAME', bone_name),), '*MESH_BONE_LIST', 3)

    def _parse_bone_vertex_list(self, num_vertices: int, mesh: Mesh) -> None:
        _resize(mesh.bone_vertices, num_vertices, BoneVertex)

        def bone_vertex():
            index = self.read_int()
            # position is repeated here, the mesh already has it
            self.read_triple()
            weights = []
            while True:
                ok, self.pos = skip_spaces(self.buf, self.pos, self.end)
                if not ok:
                    break
                start = self.pos
                bone, self.pos = read_signed_int(self.buf, self.pos, self.end)
                ok, self.pos = skip_spaces(self.buf, self.pos, self.end)
                if not ok or self.pos == start:
                    break
                weight_start = self.pos
                weight, self.pos = read_float(self.buf, self.pos, self.end)
                if self.pos == weight_start:
                    break
                # -1 marks unused entries
                if bone != -1:
                    weights.append((bone, weight))
            if index >= len(mesh.bone_vertices):
                self.warn("Bone vertex index is out of bounds. It will be ignored",
                          ErrorKind.OUT_OF_RANGE_INDEX)
                return
            mesh.bone_vertices[index].weights.extend(weights)

        self._run_section(((b'MESH_BONE_VERTEX', bone_vertex),), '*MESH_BONE_VERTEX', 4)

    def _parse_soft_skin_block(self) -> None:
        """Read the positional *MESH_SOFTSKINVERTS block of old (.asc) files.

        Layout: { <mesh name> <vertex count> [<weight count> ["bone" weight]*]* }*
        There are no keywords; the block ends at its single closing brace.
        """
        while True:
            self._skip_spaces_and_line_end()
            c = self._cur()
            if c == RBRACE:
                self.pos += 1
                return
            if c == NUL:
                return
            if c == LBRACE:
                self.pos += 1
                continue

            start = self.pos
            while not is_space_or_line_end(self._cur()):
                self.pos += 1
            name = self.buf[start:self.pos].decode('latin-1')
            mesh = next((m for m in self.meshes if m.name == name), None)
            if mesh is None:
                self.warn("Encountered unknown mesh in *MESH_SOFTSKINVERTS section",
                          ErrorKind.UNRESOLVED_REFERENCE)
                # skip the numeric lines of this mesh
                while True:
                    self._skip_spaces_and_line_end()
                    if self._cur() == RBRACE:
                        self.pos += 1
                        return
                    if not is_digit(self._cur()):
                        break
                    self._skip_line()
                continue

            self._skip_spaces_and_line_end()
            num_vertices = self.read_int()
            # weights already read from *MESH_WEIGHTS are kept, soft-skin weights add to them
            if len(mesh.bone_vertices) < num_vertices:
                _resize(mesh.bone_vertices, num_vertices, BoneVertex)
            for i in range(num_vertices):
                self._skip_spaces_and_line_end()
                num_weights = self.read_int()
                vertex = mesh.bone_vertices[i]
                for _ in range(num_weights):
                    bone_name = self.parse_string('*MESH_SOFTSKINVERTS.Bone')
                    if bone_name is None:
                        self._skip_line()
                        break
                    bone = mesh.bone_index(bone_name)
                    vertex.weights.append((bone, self.read_float()))


def parse_ase(buffer: bytes, sink: Optional[DiagnosticSink] = None,
              file_format: int = ASE_NEW_FILE_FORMAT,
              max_texture_coords: int = MAX_TEXTURE_COORDS) -> AseParser:
    """Parse an ASE buffer and return the populated parser"""
    parser = AseParser(buffer, sink, file_format, max_texture_coords)
    parser.parse()
    return parser
