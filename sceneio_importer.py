#!/usr/bin/env python3
"""
sceneio Importer
Front end that picks the pipeline for a file and packages the outcome.

    ASE:  AseParser -> AseConverter -> SceneAssembler
    glTF: GltfDecoder -> SceneAssembler

Every call builds its own parser, asset and scene; a fatal error discards all of it
and is reported through ImportResult.error / ImportResult.line.
"""

import argparse
import dataclasses
import os
import sys
from typing import List, Optional

from sceneio_ase_convert import convert_ase
from sceneio_ase_parser import parse_ase
from sceneio_assembler import assemble_scene
from sceneio_config import ASE_NEW_FILE_FORMAT, ImportSettings, default_ase_format
from sceneio_diagnostics import DiagnosticSink, ImportResult, SceneImportError
from sceneio_gltf_decoder import decode_gltf, is_glb

ASE_EXTENSIONS = ('.ase', '.ask', '.asc')
GLTF_EXTENSIONS = ('.gltf', '.glb')

FORMAT_ASE = 'ase'
FORMAT_GLTF = 'gltf'


def detect_format(path: str, data: Optional[bytes] = None) -> Optional[str]:
    """Format name from the file extension, falling back to the leading bytes"""
    ext = os.path.splitext(path)[1].lower()
    if ext in ASE_EXTENSIONS:
        return FORMAT_ASE
    if ext in GLTF_EXTENSIONS:
        return FORMAT_GLTF
    if data is None:
        return None
    if is_glb(data):
        return FORMAT_GLTF
    head = data[:256]
    if b'*3DSMAX_ASCIIEXPORT' in head:
        return FORMAT_ASE
    if head.lstrip().startswith(b'{') and b'"asset"' in data[:4096]:
        return FORMAT_GLTF
    return None


def import_bytes(data: bytes, file_format: str, settings: Optional[ImportSettings] = None,
                 base_dir: Optional[str] = None) -> ImportResult:
    """Import an in-memory file of the given format ('ase' or 'gltf')"""
    settings = settings if settings is not None else ImportSettings()
    sink = DiagnosticSink(verbose=settings.verbose)
    try:
        if file_format == FORMAT_ASE:
            version = settings.ase_format_version or ASE_NEW_FILE_FORMAT
            parser = parse_ase(data, sink, version, settings.max_texture_coords)
            asset = convert_ase(parser, sink, settings)
        elif file_format == FORMAT_GLTF:
            asset = decode_gltf(data, base_dir, sink)
        else:
            return ImportResult(diagnostics=sink.records,
                                error=f"Unsupported file format: {file_format}")
        scene = assemble_scene(asset, sink)
    except SceneImportError as e:
        return ImportResult(diagnostics=sink.records, error=e.message, line=e.line)
    return ImportResult(scene=scene, diagnostics=sink.records)


def import_file(path: str, settings: Optional[ImportSettings] = None) -> ImportResult:
    """Read and import one scene file"""
    settings = settings if settings is not None else ImportSettings()
    with open(path, 'rb') as f:
        data = f.read()

    file_format = detect_format(path, data)
    if file_format is None:
        return ImportResult(error=f"Unsupported file format: {path}")
    if file_format == FORMAT_ASE and settings.ase_format_version is None:
        settings = dataclasses.replace(settings, ase_format_version=default_ase_format(path))
    return import_bytes(data, file_format, settings,
                        base_dir=os.path.dirname(os.path.abspath(path)))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Import an ASE or glTF scene and print a summary')
    parser.add_argument('file', help='Scene file (.ase, .ask, .asc, .gltf, .glb)')
    parser.add_argument('--quiet', action='store_true', help='Do not echo warnings while importing')
    parser.add_argument('--format-version', type=int, default=None,
                        help='ASE file format version (110 = old .asc layout, 200 = current)')
    parser.add_argument('--no-smooth-normals', action='store_true',
                        help='Do not build normals from ASE smoothing groups')
    args = parser.parse_args(argv)

    if not os.path.exists(args.file):
        print(f"Error: File not found: {args.file}")
        return 1

    settings = ImportSettings(
        verbose=not args.quiet,
        ase_format_version=args.format_version,
        generate_smooth_normals=not args.no_smooth_normals,
    )

    print(f"Reading: {args.file}")
    result = import_file(args.file, settings)
    if not result.ok:
        where = f" (line {result.line})" if result.line is not None else ""
        print(f"Error{where}: {result.error}")
        return 1

    print(result.scene.summary())
    print(f"Warnings:   {len(result.warnings)}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
