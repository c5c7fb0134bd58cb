"""FLAC metadata block rewriting.

A FLAC file is ``fLaC`` followed by metadata blocks, each with a 4-byte
header (1 bit last-block flag, 7 bits type, 24 bits big-endian length), then
the audio frames. Tag writes parse every block, drop the old VORBIS_COMMENT
(and PICTURE when a new cover is given), insert fresh ones right after
STREAMINFO, fix the last-block flag and stream the audio frames through
untouched. Output goes to a temp file that only replaces the original once
its size checks out.
"""

import logging
import os
import shutil
from dataclasses import dataclass

from mutagen.flac import Picture, VCFLACDict

logger = logging.getLogger(__name__)

STREAMINFO = 0
PADDING = 1
APPLICATION = 2
SEEKTABLE = 3
VORBIS_COMMENT = 4
CUESHEET = 5
PICTURE = 6

FLAC_MAGIC = b"fLaC"
STREAMINFO_SIZE = 34
MAX_BLOCK_SIZE = (1 << 24) - 1
MIN_FLAC_SIZE = len(FLAC_MAGIC) + 4 + STREAMINFO_SIZE
COPY_CHUNK = 1024 * 1024

VENDOR = "Qobuz-DL 2.0.0"
MULTI_VALUE_SEPARATOR = "; "
# Free-text values are written whole even if they contain the separator
UNSPLIT_KEYS = frozenset({
    "LYRICS", "SYNCEDLYRICS", "UNSYNCEDLYRICS", "COMMENT", "COPYRIGHT", "DESCRIPTION",
})


class FLACError(ValueError):
    """Malformed FLAC container or failed rewrite."""


@dataclass
class MetadataBlock:
    type: int
    data: bytes
    is_last: bool = False

    def to_bytes(self) -> bytes:
        if len(self.data) > MAX_BLOCK_SIZE:
            raise FLACError(f"Metadata block type {self.type} too large ({len(self.data)} bytes)")
        flag = 0x80 if self.is_last else 0
        return bytes([flag | self.type]) + len(self.data).to_bytes(3, "big") + self.data


def _skip_id3v2(fileobj) -> None:
    """Position fileobj past a leading ID3v2 tag, if any."""
    start = fileobj.tell()
    header = fileobj.read(10)
    if len(header) == 10 and header[:3] == b"ID3":
        size = 0
        for b in header[6:10]:
            size = (size << 7) | (b & 0x7F)
        footer = 10 if header[5] & 0x10 else 0
        logger.debug("Skipping %d-byte ID3v2 tag before FLAC stream", size + 10 + footer)
        fileobj.seek(start + 10 + size + footer)
    else:
        fileobj.seek(start)


def read_blocks(fileobj) -> tuple[list[MetadataBlock], int]:
    """Parse all metadata blocks. Returns (blocks, offset of first audio frame)."""
    _skip_id3v2(fileobj)
    if fileobj.read(4) != FLAC_MAGIC:
        raise FLACError("Not a FLAC file (missing fLaC marker)")

    blocks: list[MetadataBlock] = []
    while True:
        header = fileobj.read(4)
        if len(header) < 4:
            raise FLACError("Truncated metadata block header")
        block_type = header[0] & 0x7F
        if block_type == 127:
            raise FLACError("Invalid metadata block type 127")
        length = int.from_bytes(header[1:4], "big")
        data = fileobj.read(length)
        if len(data) != length:
            raise FLACError(f"Truncated metadata block type {block_type}")
        block = MetadataBlock(block_type, data, bool(header[0] & 0x80))
        blocks.append(block)
        if block.is_last:
            break

    if blocks[0].type != STREAMINFO:
        raise FLACError("First metadata block is not STREAMINFO")
    if sum(1 for b in blocks if b.type == STREAMINFO) != 1:
        raise FLACError("Multiple STREAMINFO blocks")
    return blocks, fileobj.tell()


def build_vorbis_comment(tags: list[tuple[str, str]], vendor: str = VENDOR) -> bytes:
    """Encode a VORBIS_COMMENT block body, expanding "; "-joined multi-values."""
    comment = VCFLACDict()
    comment.vendor = vendor
    for key, value in tags:
        value = str(value)
        if key.upper() in UNSPLIT_KEYS:
            values = [value]
        else:
            values = [v for v in value.split(MULTI_VALUE_SEPARATOR) if v.strip()]
        for v in values:
            comment.append((key, v))
    return comment.write()


def build_picture(cover: bytes, mime: str = "image/jpeg") -> bytes:
    """Encode a front-cover PICTURE block body."""
    pic = Picture()
    pic.type = 3
    pic.mime = mime
    pic.desc = "Cover"
    pic.data = cover
    return pic.write()


def rewrite_blocks(blocks: list[MetadataBlock], vorbis: bytes,
                   picture: bytes | None = None) -> list[MetadataBlock]:
    """Replace tag blocks and relocate the last-block flag."""
    out: list[MetadataBlock] = []
    for block in blocks:
        if block.type == VORBIS_COMMENT:
            continue
        if picture is not None and block.type == PICTURE:
            continue
        out.append(MetadataBlock(block.type, block.data))
        if block.type == STREAMINFO:
            out.append(MetadataBlock(VORBIS_COMMENT, vorbis))
            if picture is not None:
                out.append(MetadataBlock(PICTURE, picture))
    out[-1].is_last = True
    return out


def write_flac_tags(path: str, tags: list[tuple[str, str]], cover: bytes | None = None,
                    vendor: str = VENDOR) -> None:
    """Rewrite a FLAC file's tags atomically; the original is untouched on any error."""
    vorbis = build_vorbis_comment(tags, vendor)
    picture = build_picture(cover) if cover else None
    tmp_path = path + ".tagtmp"
    try:
        with open(path, "rb") as src:
            blocks, audio_offset = read_blocks(src)
            new_blocks = rewrite_blocks(blocks, vorbis, picture)
            src.seek(0, os.SEEK_END)
            audio_size = src.tell() - audio_offset
            src.seek(audio_offset)
            with open(tmp_path, "wb") as dst:
                dst.write(FLAC_MAGIC)
                for block in new_blocks:
                    dst.write(block.to_bytes())
                shutil.copyfileobj(src, dst, COPY_CHUNK)
                dst.flush()
                os.fsync(dst.fileno())

        expected = len(FLAC_MAGIC) + sum(4 + len(b.data) for b in new_blocks) + audio_size
        written = os.path.getsize(tmp_path)
        if written != expected or written < MIN_FLAC_SIZE:
            raise FLACError(f"Tagged file size mismatch: wrote {written}, expected {expected}")
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise
    logger.debug("Wrote %d tags%s to %s", len(tags), " + cover" if cover else "", path)


def read_vorbis_comments(path: str) -> list[tuple[str, str]]:
    """Return the (key, value) comments of a FLAC file, in file order."""
    with open(path, "rb") as f:
        blocks, _ = read_blocks(f)
    for block in blocks:
        if block.type == VORBIS_COMMENT:
            return list(VCFLACDict(block.data))
    return []
