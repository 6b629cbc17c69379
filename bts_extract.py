#!/usr/bin/env python3
"""
BTS Extract - Android target_files image bundler
Version: 1.0

Pulls the flashable partition images out of an Android target_files release
archive and derives a build fingerprint for every OEM image it finds.

Features:
- Extracts IMAGES/boot.img, system.img, vendor.img and every oem*.img
- Support for local files and remote URLs (http, https, s3, gs) via fsspec
- Proto fingerprint from SYSTEM/build.prop, with synthesis when the
  archive carries no explicit fingerprint
- Per-OEM fingerprints read from the image's own build.prop:
  * Sparse images → raw images (built-in converter or simg2img)
  * ext4 file reads (built-in reader or debugfs)
  * brand/name/device substituted into the proto template when the image
    has no fingerprint of its own
- Zipped image bundle (BTS_<timestamp>.zip) with fingerprint.txt alongside

Dependencies:
    pip install fsspec
    # Optional host tools: simg2img, debugfs (used by --backend auto/tools)

Usage:
    python bts_extract.py target_files.zip
    python bts_extract.py target_files.zip -o out --backend native
    python bts_extract.py https://example.com/target_files.zip --keep-images
    python bts_extract.py                              # Prompt for the archive
"""

import argparse
import fnmatch
import logging
import os
import shutil
import struct
import subprocess
import sys
import urllib.parse
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import fsspec


# =============================================================================
# CONSTANTS AND LOGGING
# =============================================================================

PROTO_PROP_MEMBER = "SYSTEM/build.prop"
FIXED_IMAGES = ("IMAGES/boot.img", "IMAGES/system.img", "IMAGES/vendor.img")
IMAGES_DIR = "IMAGES/"
OEM_IMAGE_PATTERN = "IMAGES/oem*.img"
OEM_IMAGE_NAME = "oem*.img"

# Where an OEM image may keep its property file, highest priority first
OEM_PROP_PATHS = (
    "/system/build.prop",
    "/build.prop",
    "/system/system/build.prop",
    "/oem/build.prop",
    "/vendor/build.prop",
    "/system/etc/build.prop",
    "/oem.prop",
)

FINGERPRINT_FILE = "fingerprint.txt"
BUNDLE_PREFIX = "BTS_"
RAW_SUFFIX = ".raw"
TOOL_TIMEOUT = 60  # seconds per external tool call
UNKNOWN = "unknown"
PROTO_TYPE_TAGS = "user/release-keys"

SPARSE_HEADER_MAGIC = 0xED26FF3A
EXT4_MAGIC = 0xEF53
EROFS_MAGIC = 0xE0F5E1E2

logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ExtractError(Exception):
    """Base exception for target_files extraction errors."""
    pass


class ArchiveError(ExtractError):
    """Raised when the archive or a required member cannot be read."""
    pass


class NoImagesError(ExtractError):
    """Raised when the archive holds none of the partition images."""
    pass


class ImageFormatError(ExtractError):
    """Raised when a sparse or ext4 image structure is invalid."""
    pass


# =============================================================================
# PROPERTY PARSING
# =============================================================================

# Alias groups: equivalent keys for one field, resolved in text order
PROTO_BUILD_GROUPS = {
    'fingerprint': ("ro.build.fingerprint",),
    'system_fingerprint': ("ro.system.build.fingerprint",),
    'release': ("ro.system.build.version.release",),
    'build_id': ("ro.system.build.id",),
    'incremental': ("ro.system.build.version.incremental",),
}

PROTO_PRODUCT_GROUPS = {
    'brand': ("ro.product.brand", "ro.system.product.brand"),
    'name': ("ro.product.name", "ro.system.product.name"),
    'device': ("ro.product.device", "ro.system.product.device"),
}

OEM_PROPERTY_GROUPS = {
    'fingerprint': ("ro.build.fingerprint", "ro.system.build.fingerprint",
                    "ro.vendor.build.fingerprint"),
    'brand': ("ro.product.brand", "ro.system.product.brand", "ro.vendor.product.brand"),
    'name': ("ro.product.name", "ro.system.product.name", "ro.vendor.product.name"),
    'device': ("ro.product.device", "ro.system.product.device", "ro.vendor.product.device"),
}


def iter_properties(text: str) -> Iterator[Tuple[str, str]]:
    """Yield (key, value) pairs from build.prop text in file order."""
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, _, value = line.partition('=')
        yield key.strip(), value.strip()


def resolve_alias_groups(text: str, groups: Dict[str, Sequence[str]]) -> Dict[str, Optional[str]]:
    """
    Resolve every alias group against build.prop text in a single pass.

    A group takes the first non-empty value whose key belongs to it, in the
    order the keys appear in the text; the order of keys inside the group
    does not matter. Unresolved groups map to None.
    """
    owners = {key: field for field, keys in groups.items() for key in keys}
    resolved: Dict[str, Optional[str]] = dict.fromkeys(groups)

    for key, value in iter_properties(text):
        field = owners.get(key)
        if field is not None and value and resolved[field] is None:
            resolved[field] = value

    return resolved


# =============================================================================
# FINGERPRINTS
# =============================================================================

class FingerprintSource:
    """Where a resolved OEM fingerprint came from."""
    EXPLICIT = 'explicit'
    RECONSTRUCTED = 'reconstructed'
    PROTO = 'proto'


@dataclass
class FingerprintTemplate:
    """A fingerprint split as brand/name/device[:tail]."""
    brand: str
    name: str
    device: str
    tail: str

    @classmethod
    def parse(cls, fingerprint: str) -> Optional['FingerprintTemplate']:
        """Split on the first two '/' and the first ':' after them; None if malformed."""
        parts = fingerprint.split('/', 2)
        if len(parts) != 3:
            return None

        brand, name, rest = parts
        device, _, tail = rest.partition(':')
        return cls(brand=brand, name=name, device=device, tail=tail)

    def render(self) -> str:
        result = f"{self.brand}/{self.name}/{self.device}"
        if self.tail:
            result += f":{self.tail}"
        return result


def synthesize_fingerprint(brand: Optional[str], name: Optional[str], device: Optional[str],
                           release: Optional[str], build_id: Optional[str],
                           incremental: Optional[str]) -> str:
    """Build a user/release-keys fingerprint; every missing field becomes 'unknown'."""
    brand, name, device, release, build_id, incremental = (
        value or UNKNOWN for value in (brand, name, device, release, build_id, incremental)
    )
    return f"{brand}/{name}/{device}:{release}/{build_id}/{incremental}:{PROTO_TYPE_TAGS}"


def extract_proto_fingerprint(text: str) -> str:
    """
    Derive the archive-level fingerprint from SYSTEM/build.prop text.

    Precedence is ro.build.fingerprint, then ro.system.build.fingerprint,
    then a fingerprint synthesized from the product and system build
    properties.
    """
    build = resolve_alias_groups(text, PROTO_BUILD_GROUPS)

    if build['fingerprint']:
        return build['fingerprint']
    if build['system_fingerprint']:
        return build['system_fingerprint']

    product = resolve_alias_groups(text, PROTO_PRODUCT_GROUPS)
    return synthesize_fingerprint(
        product['brand'], product['name'], product['device'],
        build['release'], build['build_id'], build['incremental'],
    )


def rebuild_fingerprint(proto: str, brand: Optional[str] = None,
                        name: Optional[str] = None, device: Optional[str] = None) -> str:
    """Substitute brand/name/device into the proto template; malformed templates pass through."""
    template = FingerprintTemplate.parse(proto)
    if template is None:
        return proto

    return FingerprintTemplate(
        brand=brand or template.brand,
        name=name or template.name,
        device=device or template.device,
        tail=template.tail,
    ).render()


# =============================================================================
# IMAGE DETECTION
# =============================================================================

def detect_image_type(file_path: str) -> str:
    """Detect whether an image is sparse, ext4, erofs or something else."""
    with open(file_path, 'rb') as f:
        header = f.read(4)
        if len(header) < 4:
            return 'unknown'

        if struct.unpack('<I', header)[0] == SPARSE_HEADER_MAGIC:
            return 'sparse'

        # ext4 magic lives inside the superblock at 0x400
        f.seek(0x438)
        ext4_header = f.read(2)
        if len(ext4_header) == 2 and struct.unpack('<H', ext4_header)[0] == EXT4_MAGIC:
            return 'ext4'

        f.seek(0x400)
        erofs_header = f.read(4)
        if len(erofs_header) == 4 and struct.unpack('<I', erofs_header)[0] == EROFS_MAGIC:
            return 'erofs'

    return 'raw'


# =============================================================================
# SPARSE CONVERSION
# =============================================================================

@dataclass
class SparseHeader:
    """Android sparse image header."""
    magic: int
    major_version: int
    minor_version: int
    file_header_size: int
    chunk_header_size: int
    block_size: int
    total_blocks: int
    total_chunks: int
    checksum: int


class SparseConverter:
    """Turns a sparse image into a raw one next to it."""

    name = 'none'

    def convert(self, image_path: str) -> Optional[str]:
        """Return the raw image path, or None when the image was not converted."""
        raise NotImplementedError


class NativeSparseConverter(SparseConverter):
    """Convert Android sparse images to raw images without host tools."""

    name = 'native'

    CHUNK_TYPE_RAW = 0xCAC1
    CHUNK_TYPE_FILL = 0xCAC2
    CHUNK_TYPE_DONT_CARE = 0xCAC3
    CHUNK_TYPE_CRC32 = 0xCAC4

    COPY_SIZE = 1024 * 1024

    def __init__(self, progress_callback: Optional[Callable] = None):
        self.progress_callback = progress_callback

    def convert(self, image_path: str) -> Optional[str]:
        if detect_image_type(image_path) != 'sparse':
            return None

        raw_path = image_path + RAW_SUFFIX
        try:
            self.convert_to(image_path, raw_path)
        except (ImageFormatError, OSError) as e:
            logger.debug(f"Sparse conversion failed for {image_path}: {e}")
            if os.path.exists(raw_path):
                os.remove(raw_path)
            return None
        return raw_path

    def convert_to(self, input_path: str, output_path: str) -> None:
        """Convert sparse image to raw image."""
        with open(input_path, 'rb') as f_in:
            header = self._read_header(f_in)

            logger.debug(f"Sparse image: {header.total_blocks} blocks of {header.block_size} bytes")

            with open(output_path, 'wb') as f_out:
                for chunk_idx in range(header.total_chunks):
                    self._process_chunk(f_in, f_out, header)

                    if self.progress_callback:
                        self.progress_callback(
                            chunk_idx + 1,
                            header.total_chunks,
                            f"Converting chunk {chunk_idx + 1}/{header.total_chunks}"
                        )

                # Trailing don't-care chunks only move the file position
                f_out.truncate(header.total_blocks * header.block_size)

    def _read_header(self, f: BinaryIO) -> SparseHeader:
        """Read and parse sparse image header."""
        data = f.read(28)
        if len(data) < 28:
            raise ImageFormatError("Invalid sparse image header")

        magic, major, minor, file_hdr_sz, chunk_hdr_sz, block_sz, total_blks, total_chunks, checksum = \
            struct.unpack('<IHHHHIIII', data)

        if magic != SPARSE_HEADER_MAGIC:
            raise ImageFormatError(f"Invalid sparse magic: {hex(magic)}")

        # Skip any extra header bytes
        if file_hdr_sz > 28:
            f.read(file_hdr_sz - 28)

        return SparseHeader(
            magic=magic,
            major_version=major,
            minor_version=minor,
            file_header_size=file_hdr_sz,
            chunk_header_size=chunk_hdr_sz,
            block_size=block_sz,
            total_blocks=total_blks,
            total_chunks=total_chunks,
            checksum=checksum
        )

    def _process_chunk(self, f_in: BinaryIO, f_out: BinaryIO, header: SparseHeader) -> None:
        """Process a single chunk from sparse image."""
        chunk_header = f_in.read(12)
        if len(chunk_header) < 12:
            raise ImageFormatError("Unexpected end of sparse image")

        chunk_type, reserved, chunk_sz, total_sz = struct.unpack('<HHII', chunk_header)

        # Skip any extra chunk header bytes
        if header.chunk_header_size > 12:
            f_in.read(header.chunk_header_size - 12)

        out_size = chunk_sz * header.block_size

        if chunk_type == self.CHUNK_TYPE_RAW:
            remaining = total_sz - header.chunk_header_size
            while remaining > 0:
                data = f_in.read(min(remaining, self.COPY_SIZE))
                if not data:
                    raise ImageFormatError("Unexpected end of sparse image")
                f_out.write(data)
                remaining -= len(data)

        elif chunk_type == self.CHUNK_TYPE_FILL:
            fill_data = f_in.read(4)
            block = fill_data * (header.block_size // 4)
            for _ in range(chunk_sz):
                f_out.write(block)

        elif chunk_type == self.CHUNK_TYPE_DONT_CARE:
            f_out.seek(out_size, os.SEEK_CUR)

        elif chunk_type == self.CHUNK_TYPE_CRC32:
            f_in.read(4)

        else:
            raise ImageFormatError(f"Unknown chunk type: {hex(chunk_type)}")


class Simg2imgConverter(SparseConverter):
    """Convert sparse images with the host simg2img tool."""

    name = 'simg2img'

    def __init__(self, tool_path: str, timeout: int = TOOL_TIMEOUT):
        self.tool_path = tool_path
        self.timeout = timeout

    def convert(self, image_path: str) -> Optional[str]:
        raw_path = image_path + RAW_SUFFIX
        try:
            result = subprocess.run(
                [self.tool_path, image_path, raw_path],
                capture_output=True, timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"simg2img failed for {image_path}: {e}")
            self._discard(raw_path)
            return None

        if result.returncode != 0 or not os.path.isfile(raw_path):
            logger.debug(f"simg2img exited with {result.returncode} for {image_path}")
            self._discard(raw_path)
            return None
        return raw_path

    @staticmethod
    def _discard(raw_path: str) -> None:
        # simg2img creates its output before validating the input
        if os.path.exists(raw_path):
            os.remove(raw_path)


# =============================================================================
# FILESYSTEM READS
# =============================================================================

class ImageFileReader:
    """Reads one file out of a filesystem image."""

    name = 'none'

    def read(self, image_path: str, in_image_path: str) -> Optional[bytes]:
        """Return the file content, or None if it cannot be read for any reason."""
        raise NotImplementedError


class Ext4FileReader(ImageFileReader):
    """Read files from ext4 filesystem images without host tools."""

    name = 'native'

    # ext4 constants
    EXT4_S_IFMT = 0xF000
    EXT4_S_IFREG = 0x8000  # Regular file
    EXT4_S_IFDIR = 0x4000  # Directory

    EXT4_ROOT_INODE = 2
    EXT4_EXT_MAGIC = 0xF30A
    EXT4_EXTENTS_FL = 0x80000
    EXT4_INIT_MAX_LEN = 32768

    # Feature flags
    EXT4_FEATURE_INCOMPAT_EXTENTS = 0x0040
    EXT4_FEATURE_INCOMPAT_64BIT = 0x0080

    def __init__(self):
        self.block_size = 4096
        self.inode_size = 256
        self.inodes_per_group = 0
        self.desc_size = 32
        self.has_extents = False
        self.is_64bit = False

    def read(self, image_path: str, in_image_path: str) -> Optional[bytes]:
        try:
            image_type = detect_image_type(image_path)
            if image_type == 'erofs':
                logger.debug(f"{Path(image_path).name}: erofs is not readable by the ext4 reader, skipping")
                return None
            if image_type != 'ext4':
                return None

            with open(image_path, 'rb') as f:
                self._read_superblock(f)
                inode = self._lookup(f, in_image_path)
                if inode is None or inode['mode'] & self.EXT4_S_IFMT != self.EXT4_S_IFREG:
                    return None
                return self._read_file_data(f, inode)
        except (ImageFormatError, OSError, ValueError, struct.error) as e:
            logger.debug(f"ext4 read of {in_image_path} from {image_path} failed: {e}")
            return None

    def _read_superblock(self, f: BinaryIO):
        """Read and parse ext4 superblock."""
        f.seek(0x400)
        sb = f.read(256)
        if len(sb) < 256:
            raise ImageFormatError("Truncated ext4 superblock")

        magic = struct.unpack('<H', sb[0x38:0x3A])[0]
        if magic != EXT4_MAGIC:
            raise ImageFormatError(f"Invalid ext4 magic: {hex(magic)}")

        self.inodes_per_group = struct.unpack('<I', sb[0x28:0x2C])[0]
        if self.inodes_per_group == 0:
            raise ImageFormatError("ext4 superblock has no inodes per group")

        log_block_size = struct.unpack('<I', sb[0x18:0x1C])[0]
        self.block_size = 1024 << log_block_size

        self.inode_size = struct.unpack('<H', sb[0x58:0x5A])[0]
        if self.inode_size == 0:
            self.inode_size = 128

        feature_incompat = struct.unpack('<I', sb[0x60:0x64])[0]
        self.has_extents = bool(feature_incompat & self.EXT4_FEATURE_INCOMPAT_EXTENTS)
        self.is_64bit = bool(feature_incompat & self.EXT4_FEATURE_INCOMPAT_64BIT)

        self.desc_size = 32
        if self.is_64bit:
            self.desc_size = struct.unpack('<H', sb[0xFE:0x100])[0] or 32

    def _inode_table(self, f: BinaryIO, group: int) -> int:
        """Get the inode table block of a block group."""
        # Group descriptors start right after the superblock's block
        desc_block = 2 if self.block_size == 1024 else 1
        f.seek(desc_block * self.block_size + group * self.desc_size)
        desc = f.read(self.desc_size)

        inode_table = struct.unpack('<I', desc[0x08:0x0C])[0]
        if self.is_64bit and self.desc_size >= 64:
            inode_table |= struct.unpack('<I', desc[0x28:0x2C])[0] << 32
        return inode_table

    def _read_inode(self, f: BinaryIO, inode_num: int) -> Optional[dict]:
        """Read an inode by number."""
        if inode_num == 0:
            return None

        group = (inode_num - 1) // self.inodes_per_group
        index = (inode_num - 1) % self.inodes_per_group

        f.seek(self._inode_table(f, group) * self.block_size + index * self.inode_size)
        inode_data = f.read(self.inode_size)
        if len(inode_data) < 0x64:
            raise ImageFormatError(f"Truncated inode {inode_num}")

        mode = struct.unpack('<H', inode_data[0x00:0x02])[0]
        size_lo = struct.unpack('<I', inode_data[0x04:0x08])[0]
        size_hi = struct.unpack('<I', inode_data[0x6C:0x70])[0] if len(inode_data) >= 0x70 else 0
        flags = struct.unpack('<I', inode_data[0x20:0x24])[0]

        return {
            'mode': mode,
            'size': size_lo | (size_hi << 32),
            'block_data': inode_data[0x28:0x64],  # 60 bytes of i_block
            'uses_extents': bool(flags & self.EXT4_EXTENTS_FL),
        }

    def _lookup(self, f: BinaryIO, path: str) -> Optional[dict]:
        """Walk an absolute path from the root directory."""
        inode = self._read_inode(f, self.EXT4_ROOT_INODE)

        for part in [p for p in path.split('/') if p]:
            if inode is None or inode['mode'] & self.EXT4_S_IFMT != self.EXT4_S_IFDIR:
                return None
            entry = next((e for e in self._parse_directory(f, inode) if e['name'] == part), None)
            if entry is None:
                return None
            inode = self._read_inode(f, entry['inode'])

        return inode

    def _read_extent_tree(self, f: BinaryIO, block_data: bytes, file_size: int) -> bytes:
        """Read file data using extent tree."""
        magic = struct.unpack('<H', block_data[0:2])[0]
        if magic != self.EXT4_EXT_MAGIC:
            return self._read_block_pointers(f, block_data, file_size)

        data = bytearray()
        self._walk_extents(f, block_data, data, file_size)
        if len(data) < file_size:
            data.extend(b'\x00' * (file_size - len(data)))
        return bytes(data[:file_size])

    def _walk_extents(self, f: BinaryIO, node: bytes, data: bytearray, file_size: int) -> None:
        """Append the blocks of one extent tree node to data at their logical offsets."""
        magic, entries, _, depth = struct.unpack('<HHHH', node[0:8])
        if magic != self.EXT4_EXT_MAGIC:
            raise ImageFormatError(f"Invalid extent magic: {hex(magic)}")

        for i in range(entries):
            entry = node[12 + i * 12:24 + i * 12]

            if depth == 0:
                ee_block, ee_len, ee_start_hi, ee_start_lo = struct.unpack('<IHHI', entry)
                ee_start = ee_start_lo | (ee_start_hi << 32)

                # Holes before this extent read back as zeros
                offset = ee_block * self.block_size
                if offset > len(data):
                    data.extend(b'\x00' * (offset - len(data)))

                if ee_len > self.EXT4_INIT_MAX_LEN:
                    data.extend(b'\x00' * ((ee_len - self.EXT4_INIT_MAX_LEN) * self.block_size))
                else:
                    f.seek(ee_start * self.block_size)
                    data.extend(f.read(ee_len * self.block_size))
            else:
                ei_leaf_lo, ei_leaf_hi = struct.unpack('<IH', entry[4:10])
                f.seek((ei_leaf_lo | (ei_leaf_hi << 32)) * self.block_size)
                self._walk_extents(f, f.read(self.block_size), data, file_size)

            if len(data) >= file_size:
                break

    def _read_block_pointers(self, f: BinaryIO, block_data: bytes, file_size: int) -> bytes:
        """Read file data using traditional block pointers."""
        data = bytearray()
        blocks_needed = (file_size + self.block_size - 1) // self.block_size

        # Direct blocks (0-11)
        pointers = struct.unpack('<12I', block_data[0:48])
        for block_num in pointers[:blocks_needed]:
            data.extend(self._read_block(f, block_num))

        # Single indirect block (12)
        if blocks_needed > 12:
            indirect_block = struct.unpack('<I', block_data[48:52])[0]
            if indirect_block:
                f.seek(indirect_block * self.block_size)
                indirect = f.read(self.block_size)
                count = min(self.block_size // 4, blocks_needed - 12)
                for block_num in struct.unpack(f'<{count}I', indirect[:count * 4]):
                    data.extend(self._read_block(f, block_num))

        return bytes(data[:file_size])

    def _read_block(self, f: BinaryIO, block_num: int) -> bytes:
        if block_num == 0:
            return b'\x00' * self.block_size
        f.seek(block_num * self.block_size)
        return f.read(self.block_size)

    def _read_file_data(self, f: BinaryIO, inode: dict) -> bytes:
        """Read all data from a file inode."""
        if inode['size'] == 0:
            return b''

        if inode['uses_extents'] or self.has_extents:
            return self._read_extent_tree(f, inode['block_data'], inode['size'])
        return self._read_block_pointers(f, inode['block_data'], inode['size'])

    def _parse_directory(self, f: BinaryIO, inode: dict) -> list[dict]:
        """Parse directory entries from inode."""
        entries = []
        dir_data = self._read_file_data(f, inode)

        offset = 0
        while offset + 8 <= len(dir_data):
            inode_num, rec_len, name_len, file_type = struct.unpack('<IHBB', dir_data[offset:offset + 8])

            if rec_len == 0 or offset + rec_len > len(dir_data):
                break

            if inode_num != 0 and name_len > 0:
                name = dir_data[offset + 8:offset + 8 + name_len].decode('utf-8', errors='ignore')
                entries.append({
                    'inode': inode_num,
                    'name': name,
                    'file_type': file_type,
                })

            offset += rec_len

        return entries


class DebugfsReader(ImageFileReader):
    """Read files from ext4 images with the host debugfs tool."""

    name = 'debugfs'

    def __init__(self, tool_path: str, timeout: int = TOOL_TIMEOUT):
        self.tool_path = tool_path
        self.timeout = timeout

    def read(self, image_path: str, in_image_path: str) -> Optional[bytes]:
        try:
            result = subprocess.run(
                [self.tool_path, '-R', f'cat {in_image_path}', image_path],
                capture_output=True, timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"debugfs failed for {image_path}: {e}")
            return None

        if result.returncode != 0 or not result.stdout:
            return None
        return result.stdout


# =============================================================================
# CAPABILITY DETECTION
# =============================================================================

class Backend:
    """Which implementations back sparse conversion and filesystem reads."""
    AUTO = 'auto'
    NATIVE = 'native'
    TOOLS = 'tools'

    @classmethod
    def all(cls) -> list[str]:
        return [cls.AUTO, cls.NATIVE, cls.TOOLS]


@dataclass
class Capabilities:
    """Optional collaborators available to the OEM fingerprint resolver."""
    converter: Optional[SparseConverter]
    reader: Optional[ImageFileReader]


def detect_capabilities(backend: str = Backend.AUTO) -> Capabilities:
    """
    Pick the sparse converter and filesystem reader for a run.

    'auto' prefers simg2img/debugfs when they are on PATH and falls back to
    the built-in implementations. 'tools' uses host tools only and warns
    about any that are missing; the matching capability is then absent.
    """
    if backend == Backend.NATIVE:
        return Capabilities(NativeSparseConverter(), Ext4FileReader())

    simg2img = shutil.which('simg2img')
    debugfs = shutil.which('debugfs')

    if backend == Backend.TOOLS:
        if not simg2img:
            logger.warning("simg2img not found, sparse images will not be converted")
        if not debugfs:
            logger.warning("debugfs not found, fingerprints cannot be read from ext4 images")
        return Capabilities(
            Simg2imgConverter(simg2img) if simg2img else None,
            DebugfsReader(debugfs) if debugfs else None,
        )

    if backend == Backend.AUTO:
        converter = Simg2imgConverter(simg2img) if simg2img else NativeSparseConverter()
        reader = DebugfsReader(debugfs) if debugfs else Ext4FileReader()
        logger.debug(f"Using {converter.name} sparse converter and {reader.name} file reader")
        return Capabilities(converter, reader)

    raise ValueError(f"Unknown backend: {backend}")


# =============================================================================
# OEM FINGERPRINT RESOLUTION
# =============================================================================

@dataclass
class FingerprintResolution:
    """Outcome of resolving one OEM image."""
    image_path: str
    fingerprint: str
    source: str = FingerprintSource.PROTO
    raw_path: Optional[str] = None
    content_path: Optional[str] = None


def _convert_image(converter: Optional[SparseConverter], image_path: str) -> Optional[str]:
    """Return the converted raw path; any converter failure leaves the image as it is."""
    if converter is None:
        return None

    try:
        return converter.convert(image_path)
    except Exception as e:
        logger.debug(f"{Path(image_path).name}: {converter.name} conversion failed ({e})")
        return None


def _read_first_candidate(reader: Optional[ImageFileReader], image_path: str,
                          candidate_paths: Sequence[str]) -> Tuple[Optional[bytes], Optional[str]]:
    """Return the content and in-image path of the first candidate that has content."""
    if reader is None:
        return None, None

    for path in candidate_paths:
        content = reader.read(image_path, path)
        if content:
            return content, path

    return None, None


def resolve_oem_image(image_path: str, proto_template: str,
                      candidate_paths: Sequence[str] = OEM_PROP_PATHS,
                      converter: Optional[SparseConverter] = None,
                      reader: Optional[ImageFileReader] = None) -> FingerprintResolution:
    """
    Resolve the fingerprint of one OEM image.

    The image is converted to raw when a converter is available, then the
    first candidate property file with content is parsed. An explicit
    fingerprint wins; otherwise any brand/name/device found is substituted
    into the proto template; otherwise the proto template is returned.
    Nothing raised by the collaborators escapes: the worst outcome is the
    proto template.
    """
    resolution = FingerprintResolution(image_path=image_path, fingerprint=proto_template)

    try:
        resolution.raw_path = _convert_image(converter, image_path)
        source_image = resolution.raw_path or image_path

        content, content_path = _read_first_candidate(reader, source_image, candidate_paths)
        if content is None:
            logger.debug(f"{Path(image_path).name}: no property file found")
            return resolution

        resolution.content_path = content_path
        props = resolve_alias_groups(content.decode('utf-8', errors='ignore'), OEM_PROPERTY_GROUPS)

        if props['fingerprint']:
            resolution.fingerprint = props['fingerprint']
            resolution.source = FingerprintSource.EXPLICIT
        elif props['brand'] or props['name'] or props['device']:
            resolution.fingerprint = rebuild_fingerprint(
                proto_template, props['brand'], props['name'], props['device']
            )
            if FingerprintTemplate.parse(proto_template) is not None:
                resolution.source = FingerprintSource.RECONSTRUCTED
    except Exception as e:
        logger.debug(f"{Path(image_path).name}: falling back to proto fingerprint ({e})")
        resolution.fingerprint = proto_template
        resolution.source = FingerprintSource.PROTO

    return resolution


def resolve_oem_fingerprint(image_path: str, proto_template: str,
                            candidate_paths: Sequence[str] = OEM_PROP_PATHS,
                            converter: Optional[SparseConverter] = None,
                            reader: Optional[ImageFileReader] = None) -> str:
    """Resolve the fingerprint string of one OEM image."""
    return resolve_oem_image(image_path, proto_template, candidate_paths, converter, reader).fingerprint


# =============================================================================
# TARGET FILES ARCHIVE
# =============================================================================

class TargetFilesArchive:
    """Context manager for target_files zips (local or remote)."""

    def __init__(self, archive_path: str):
        self.archive_path = archive_path
        self._zip_file: Optional[zipfile.ZipFile] = None
        self._remote_file: Optional[BinaryIO] = None

    def __enter__(self) -> 'TargetFilesArchive':
        is_url = '://' in self.archive_path
        self._zip_file = self._open_remote() if is_url else self._open_local()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._zip_file:
            self._zip_file.close()
        if self._remote_file:
            self._remote_file.close()

    def _open_remote(self) -> zipfile.ZipFile:
        protocol = urllib.parse.urlparse(self.archive_path).scheme
        try:
            fs = fsspec.filesystem(protocol)
            self._remote_file = fs.open(self.archive_path)
        except (ValueError, ImportError, OSError) as e:
            raise ArchiveError(f"Cannot open {self.archive_path}: {e}") from e

        if not zipfile.is_zipfile(self._remote_file):
            raise ArchiveError(f"Not a zip archive: {self.archive_path}")

        self._remote_file.seek(0)
        return zipfile.ZipFile(self._remote_file)

    def _open_local(self) -> zipfile.ZipFile:
        if not os.path.isfile(self.archive_path):
            raise ArchiveError(f"File not found: {self.archive_path}")
        if not zipfile.is_zipfile(self.archive_path):
            raise ArchiveError(f"Not a zip archive: {self.archive_path}")
        return zipfile.ZipFile(self.archive_path)

    def namelist(self) -> list[str]:
        return self._zip_file.namelist()

    def read_member(self, name: str) -> bytes:
        """Read one member; a missing or unreadable member is fatal."""
        try:
            return self._zip_file.read(name)
        except KeyError:
            raise ArchiveError(f"{name} not found in {self.archive_path}") from None
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveError(f"Cannot read {name} from {self.archive_path}: {e}") from e

    def find_images(self) -> list[str]:
        """List boot/system/vendor images, then oem*.img in lexicographic order."""
        names = set(self.namelist())
        images = [name for name in FIXED_IMAGES if name in names]
        images += sorted(
            name for name in names
            if fnmatch.fnmatchcase(name, OEM_IMAGE_PATTERN) and '/' not in name[len(IMAGES_DIR):]
        )
        return images

    def extract_images(self, members: Sequence[str], output_dir: str) -> list[str]:
        """Extract members flat into output_dir, overwriting existing files."""
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        extracted = []

        for member in members:
            output_path = Path(output_dir) / Path(member).name
            try:
                with self._zip_file.open(member) as src, open(output_path, 'wb') as dst:
                    shutil.copyfileobj(src, dst, 1024 * 1024)
            except (KeyError, zipfile.BadZipFile) as e:
                raise ArchiveError(f"Cannot extract {member}: {e}") from e

            extracted.append(str(output_path))
            logger.info(f"  Extracted: {Path(member).name}")

        return extracted


# =============================================================================
# EXTRACTION PIPELINE
# =============================================================================

def read_proto_fingerprint(archive: TargetFilesArchive) -> str:
    """Derive the proto fingerprint from the archive's SYSTEM/build.prop."""
    data = archive.read_member(PROTO_PROP_MEMBER)
    return extract_proto_fingerprint(data.decode('utf-8', errors='ignore'))


def is_oem_image(path: str) -> bool:
    return fnmatch.fnmatchcase(Path(path).name, OEM_IMAGE_NAME)


def resolve_oem_images(image_paths: Sequence[str], proto_template: str,
                       capabilities: Capabilities) -> list[FingerprintResolution]:
    """Resolve every OEM image in filename order."""
    oem_paths = sorted((p for p in image_paths if is_oem_image(p)), key=lambda p: Path(p).name)
    resolutions = []

    for path in oem_paths:
        resolution = resolve_oem_image(
            path, proto_template,
            converter=capabilities.converter,
            reader=capabilities.reader,
        )
        logger.info(f"  {Path(path).name}: {resolution.fingerprint} ({resolution.source})")
        resolutions.append(resolution)

    return resolutions


def write_fingerprints(resolutions: Sequence[FingerprintResolution], output_path: Path) -> list[str]:
    """Write one fingerprint per line, skipping empty ones."""
    fingerprints = [r.fingerprint for r in resolutions if r.fingerprint]
    with open(output_path, 'w', encoding='utf-8') as f:
        for fingerprint in fingerprints:
            f.write(fingerprint + '\n')
    return fingerprints


def create_bundle(image_paths: Sequence[str], output_dir: Path,
                  timestamp: Optional[str] = None) -> Path:
    """Zip the extracted images into BTS_<timestamp>.zip inside output_dir."""
    timestamp = timestamp or datetime.now().strftime('%Y%m%d_%H%M%S')
    bundle_path = output_dir / f"{BUNDLE_PREFIX}{timestamp}.zip"

    with zipfile.ZipFile(bundle_path, 'w', zipfile.ZIP_DEFLATED) as zf:
        for path in image_paths:
            zf.write(path, arcname=Path(path).name)

    return bundle_path


def remove_files(paths: Sequence[str]) -> None:
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def run_extract(args) -> dict:
    """Run the full extraction from parsed command-line arguments."""
    output_dir = Path(args.out)
    output_dir.mkdir(parents=True, exist_ok=True)

    capabilities = detect_capabilities(args.backend)

    with TargetFilesArchive(args.target_files) as archive:
        members = archive.find_images()
        if not members:
            raise NoImagesError(f"No boot/system/vendor/oem*.img found under {IMAGES_DIR}")

        logger.info(f"Found {len(members)} image file(s)")

        logger.info("Reading system fingerprint...")
        proto_template = read_proto_fingerprint(archive)
        logger.debug(f"Proto fingerprint: {proto_template}")

        logger.info("Extracting images...")
        image_paths = archive.extract_images(members, str(output_dir))

    logger.info("Resolving OEM fingerprints...")
    resolutions = resolve_oem_images(image_paths, proto_template, capabilities)

    fingerprint_path = output_dir / FINGERPRINT_FILE
    fingerprints = write_fingerprints(resolutions, fingerprint_path)

    # Converted artifacts are only needed while resolving
    remove_files([r.raw_path for r in resolutions if r.raw_path])

    logger.info("Packaging images...")
    bundle_path = create_bundle(image_paths, output_dir)

    if not args.keep_images:
        remove_files(image_paths)

    return {
        'bundle': str(bundle_path),
        'fingerprint_file': str(fingerprint_path),
        'proto_fingerprint': proto_template,
        'fingerprints': fingerprints,
        'resolutions': resolutions,
    }


def get_target_path(target: Optional[str]) -> str:
    """Return the archive path, prompting for it when none was given."""
    if not target:
        target = input("Path to target_files archive: ").strip()

    if not target:
        raise ExtractError("No archive path provided")

    if '://' in target:
        return target
    return os.path.realpath(target)


def print_summary(result: dict) -> None:
    logger.info("")
    logger.info("Done!")
    logger.info("")
    logger.info(f"  Image bundle:      {result['bundle']}")
    logger.info(f"  Fingerprint file:  {result['fingerprint_file']}")
    logger.info("")
    logger.info("Fingerprints:")
    logger.info("-" * 40)
    for fingerprint in result['fingerprints']:
        logger.info(fingerprint)
    logger.info("-" * 40)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='BTS Extract - bundle Android target_files images and OEM fingerprints',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s target_files.zip                      Extract into ./bts_out
  %(prog)s target_files.zip -o out               Extract into ./out
  %(prog)s target_files.zip --backend native     Never call simg2img/debugfs
  %(prog)s s3://bucket/target_files.zip          Read a remote archive
        """
    )

    parser.add_argument(
        'target_files',
        nargs='?',
        default=None,
        help='target_files zip (local path or URL); prompted for when omitted'
    )
    parser.add_argument(
        '--out', '-o',
        default='bts_out',
        help='Output directory (default: bts_out)'
    )
    parser.add_argument(
        '--backend', '-b',
        choices=Backend.all(),
        default=Backend.AUTO,
        help='Sparse conversion and ext4 read implementation (default: auto)'
    )
    parser.add_argument(
        '--keep-images',
        action='store_true',
        help='Keep the loose extracted images next to the bundle'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )
    return parser


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("BTS Extract - Android image extraction tool")

    try:
        args.target_files = get_target_path(args.target_files)
        logger.info(f"Processing: {args.target_files}")
        result = run_extract(args)
    except ExtractError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("\nAborted by user")
        sys.exit(130)

    print_summary(result)


if __name__ == "__main__":
    main()
