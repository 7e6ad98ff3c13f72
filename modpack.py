#!/usr/bin/env python3
"""
Packer for mod projects
Optionally runs the project's build command, then zips sources, assets and
metadata files into a distributable mod archive
"""

import argparse
import json
import os
import shlex
import subprocess
import sys
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

__version__ = '0.1.0'

DEFAULT_ASSETS = ['assets']
DEFAULT_BUILD = 'dotnet build -p:DebugType=Portable'
DEFAULT_INCLUDE = [
    'Locals',
    'LICENSE',
    'default_config.json',
    'icon.png',
    'mod.json',
]
DEFAULT_SOURCES = ['Code', 'code', 'src']

MANIFEST_NAME = 'mod.json'
OUTPUT_DIR = Path('bin') / 'Mod'
PDB_SUFFIX = '.pdb'

# dotnet build reports each produced assembly as "<project> -> <path>"
ARTIFACT_ARROW = ' -> '


class PackError(Exception):
    """Base class for errors that abort packing"""


class BuildFailure(PackError):
    def __init__(self, command, returncode=None, reason=None):
        self.command = command
        self.returncode = returncode
        if reason is not None:
            message = f"Build command '{command}' could not be started: {reason}"
        else:
            message = f"Build command '{command}' exited with code {returncode}"
        super().__init__(message)


class IOFailure(PackError):
    def __init__(self, path, error):
        self.path = Path(path)
        self.error = error
        super().__init__(f"Cannot access {self.path}: {error}")


class ConfigurationError(PackError):
    pass


@dataclass(frozen=True)
class PackConfig:
    assets: list = field(default_factory=lambda: list(DEFAULT_ASSETS))
    build: str = DEFAULT_BUILD
    compile: bool = False
    include: list = field(default_factory=lambda: list(DEFAULT_INCLUDE))
    output: Optional[str] = None
    pdb: bool = False
    sources: list = field(default_factory=lambda: list(DEFAULT_SOURCES))
    root: Path = field(default_factory=Path.cwd)


@dataclass(frozen=True)
class PackedFile:
    source: Path
    target: str


@dataclass(frozen=True)
class ModManifest:
    name: str
    version: str

    @classmethod
    def load(cls, path):
        """Read name and version from a mod.json file"""
        try:
            data = json.loads(Path(path).read_text(encoding='utf-8'))
        except OSError as e:
            raise ConfigurationError(f"Failed to read {path}: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Failed to parse {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")
        missing = [key for key in ('name', 'version') if data.get(key) in (None, '')]
        if missing:
            raise ConfigurationError(f"{path} is missing {', '.join(missing)}")
        return cls(name=str(data['name']), version=str(data['version']))

    @property
    def archive_name(self):
        return f'{self.name}-{self.version}.zip'


def is_pdb(path):
    return Path(path).suffix.lower() == PDB_SUFFIX


def archive_path(path, root):
    """Archive name of a file: relative to the project root, or its bare name outside it"""
    # abspath collapses ".." so "../x" never lands inside the root
    path = Path(os.path.abspath(path))
    try:
        rel_path = path.relative_to(os.path.abspath(root))
    except ValueError:
        return path.name
    return rel_path.as_posix()


def file_identity(path):
    st = Path(path).stat()
    return st.st_dev, st.st_ino


def iter_entry(path):
    """Yield the regular files under a directory, or the file itself"""
    if path.is_dir():
        for child in sorted(path.rglob('*')):
            if child.is_file():
                yield child
    elif path.is_file():
        yield path


def parse_artifact(line, root):
    """Return the assembly path reported on a build output line, if it exists"""
    if ARTIFACT_ARROW not in line:
        return None
    candidate = line.split(ARTIFACT_ARROW)[-1].strip()
    if not candidate:
        return None
    path = Path(root) / candidate
    return path if path.is_file() else None


def build(command, root):
    """Run the build command, streaming its output; return the reported artifacts"""
    try:
        parts = shlex.split(command)
    except ValueError as e:
        raise ConfigurationError(f"Invalid build command '{command}': {e}") from e
    if not parts:
        raise ConfigurationError("Build command is empty")

    print(f"Compiling with: {command}\n")

    artifacts = []
    try:
        with subprocess.Popen(parts, cwd=root, stdout=subprocess.PIPE, text=True) as proc:
            for line in proc.stdout:
                line = line.rstrip('\n')
                print(line)
                artifact = parse_artifact(line, root)
                if artifact is not None:
                    artifacts.append(artifact)
            returncode = proc.wait()
    except OSError as e:
        raise BuildFailure(command, reason=e) from e

    if returncode != 0:
        raise BuildFailure(command, returncode)

    if artifacts:
        print(f"\nCompiled {len(artifacts)} files")
    else:
        print("\n⚠ No compiled files found in build output", file=sys.stderr)
    return artifacts


def collect(config, artifacts=()):
    """Gather the files to pack as (source, archive path) pairs"""
    root = Path(config.root)
    candidates = []

    for entry in [*config.sources, *config.assets, *config.include]:
        for path in iter_entry(root / entry):
            candidates.append(PackedFile(path, archive_path(path, root)))

    for artifact in artifacts:
        artifact = Path(artifact)
        candidates.append(PackedFile(artifact, artifact.name))
        if config.pdb:
            symbols = artifact.with_suffix(PDB_SUFFIX)
            if symbols.is_file():
                candidates.append(PackedFile(symbols, symbols.name))

    # Code/code alias one directory on case-insensitive filesystems
    files = []
    seen_targets = set()
    seen_files = set()
    for packed in candidates:
        if not config.pdb and is_pdb(packed.source):
            continue
        identity = file_identity(packed.source)
        if packed.target in seen_targets or identity in seen_files:
            continue
        seen_targets.add(packed.target)
        seen_files.add(identity)
        files.append(packed)
    return files


def find_manifest(config):
    """First mod.json among the asset and include entries, else the one at the root"""
    root = Path(config.root)
    for entry in [*config.assets, *config.include]:
        for path in iter_entry(root / entry):
            if path.name == MANIFEST_NAME:
                return path
    path = root / MANIFEST_NAME
    return path if path.is_file() else None


def resolve_output(config):
    """Archive path from --output, or bin/Mod/<name>-<version>.zip from mod.json"""
    root = Path(config.root)
    if config.output:
        return root / config.output

    manifest_path = find_manifest(config)
    if manifest_path is None:
        raise ConfigurationError(
            f"No {MANIFEST_NAME} found in {root}; pass --output to name the archive"
        )
    manifest = ModManifest.load(manifest_path)
    return root / OUTPUT_DIR / manifest.archive_name


def pack(files, output):
    """Write the collected files into a zip archive"""
    output = Path(output)

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IOFailure(output.parent, e) from e

    # Remove old zip if it exists
    if output.exists():
        try:
            output.unlink()
        except OSError as e:
            raise IOFailure(output, e) from e
        print(f"Removed old {output.name}")

    try:
        zipf = zipfile.ZipFile(output, 'w', zipfile.ZIP_DEFLATED)
    except OSError as e:
        raise IOFailure(output, e) from e

    with zipf:
        for packed in files:
            try:
                zipf.write(packed.source, packed.target)
            except OSError as e:
                raise IOFailure(packed.source, e) from e
            print(f"  + {packed.target}")

    size_kb = output.stat().st_size / 1024
    print(f"\n✓ Pack complete: {output.name} ({size_kb:.1f} KB)")
    return output


def run(config):
    """Build (if requested), collect and pack; return the archive path"""
    output = resolve_output(config)

    print(f"Packing {Path(config.root).name}...")
    print(f"Output: {output}")

    artifacts = []
    if config.compile:
        artifacts = build(config.build, config.root)

    # The archive may live inside a collected directory
    files = [f for f in collect(config, artifacts) if f.source.resolve() != output.resolve()]
    return pack(files, output)


def make_parser():
    parser = argparse.ArgumentParser(
        prog='modpack',
        description='Package a mod project into a distributable zip archive.',
    )
    parser.add_argument('-V', '--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--assets', nargs='+', default=DEFAULT_ASSETS,
                        help='Asset directories to be included in the package')
    parser.add_argument('--build', default=DEFAULT_BUILD,
                        help='The command used to build the project')
    parser.add_argument('-c', '--compile', action='store_true',
                        help='Run the build command before packing')
    parser.add_argument('--include', nargs='+', default=DEFAULT_INCLUDE,
                        help='Additional files or directories to include')
    parser.add_argument('-o', '--output',
                        help='Path of the packed zip file (default: bin/Mod/<name>-<version>.zip)')
    parser.add_argument('--pdb', action='store_true',
                        help='Keep .pdb debug-symbol files')
    parser.add_argument('--sources', nargs='+', default=DEFAULT_SOURCES,
                        help='Source code directories')
    return parser


def parse_args(argv=None, root=None):
    args = make_parser().parse_args(argv)
    return PackConfig(
        assets=list(args.assets),
        build=args.build,
        compile=args.compile,
        include=list(args.include),
        output=args.output,
        pdb=args.pdb,
        sources=list(args.sources),
        root=Path(root) if root is not None else Path.cwd(),
    )


def main(argv=None):
    config = parse_args(argv)
    try:
        output = run(config)
    except PackError as e:
        print(f"\n✗ Pack failed: {e}", file=sys.stderr)
        return 1
    print(f"\n✓ Mod packed at: {output}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
