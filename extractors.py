import functools
import logging
import mimetypes
import re
import struct
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from errors import MalformedInput
from models import ExtractedMetadata, MappedFields

logger = logging.getLogger(__name__)

mimetypes.add_type("image/webp", ".webp")

PHOTOSHOP_HEADER = b"Photoshop 3.0\x00"
IPTC_RESOURCE_ID = 0x0404
IPTC_UTF8_MARKER = b"\x1b%G"
IPTC_FIELDS = {5: "subject", 120: "description", 116: "comment"}

TIFF_IMAGE_DESCRIPTION = 0x010E
TIFF_XP_SUBJECT = 0x9C9F
TIFF_TYPE_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 6: 1, 7: 1, 8: 2, 9: 4, 10: 8, 11: 4, 12: 8}
EXIF_PREAMBLE = b"Exif\x00\x00"

MP4_CONTAINER_BOXES = {b"moov", b"udta", b"ilst"}
MP4_TEXT_BOXES = {b"\xa9cmt": "comment", b"desc": "description"}
MP4_MAX_DEPTH = 16

XMP_START = "<x:xmpmeta"
XMP_END = "</x:xmpmeta>"
DESCRIPTION_RE = re.compile(r"<dc:description\b[^>]*>(.*?)</dc:description>", re.S | re.I)
SUBJECT_RE = re.compile(r"<dc:subject\b[^>]*>(.*?)</dc:subject>", re.S | re.I)
COMMENT_RE = re.compile(r"<xmp:Comment>(.*?)</xmp:Comment>", re.S | re.I)
RDF_LI_RE = re.compile(r"<rdf:li[^>]*>(.*?)</rdf:li>", re.S | re.I)
TAG_RE = re.compile(r"<[^>]+>")
ENTITY_RE = re.compile(r"&(amp|lt|gt|quot|apos|#39);")
XML_ENTITIES = {"amp": "&", "lt": "<", "gt": ">", "quot": '"', "apos": "'", "#39": "'"}

MOJIBAKE_RE = re.compile("[ÂÃ][\u0080-¿]|â€[\u0080-¿™“”œž]")

_PARSE_ERRORS = (MalformedInput, struct.error, IndexError, ValueError, UnicodeError)


def looks_mojibake(text: str) -> bool:
    return bool(MOJIBAKE_RE.search(text))


def repair_mojibake(text: str) -> str:
    """Undo UTF-8 bytes that were decoded as Latin-1 or Windows-1252."""
    if not text or not looks_mojibake(text):
        return text
    for codec in ("latin-1", "cp1252"):
        try:
            return text.encode(codec).decode("utf-8")
        except UnicodeError:
            continue
    return text


def decode_text(raw: bytes) -> str:
    """Decode a metadata string, falling back to Windows-1252/Latin-1."""
    text = raw.decode("utf-8", errors="replace")
    if "\ufffd" in text:
        try:
            return raw.decode("cp1252")
        except UnicodeDecodeError:
            return raw.decode("latin-1")
    return repair_mojibake(text)


def decode_xml_entities(text: str) -> str:
    return ENTITY_RE.sub(lambda m: XML_ENTITIES[m.group(1)], text)


def guess_mime(name: str, default: str = "application/octet-stream") -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or default


def merge_metadata(*records: ExtractedMetadata) -> ExtractedMetadata:
    """Merge records left to right; later non-empty fields win."""
    merged: Dict[str, str] = {}
    for record in records:
        for key, value in record.model_dump(exclude_none=True).items():
            if value:
                merged[key] = value
    return ExtractedMetadata(**merged)


def fill_missing(base: ExtractedMetadata, extra: Dict[str, Optional[str]]) -> ExtractedMetadata:
    """Fold probe results into base without overriding fields already found."""
    current = base.model_dump()
    for key, value in extra.items():
        if value and not current.get(key):
            current[key] = value
    return ExtractedMetadata(**current)


def _never_raises(func: Callable[..., ExtractedMetadata]) -> Callable[..., ExtractedMetadata]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> ExtractedMetadata:
        try:
            return func(*args, **kwargs)
        except _PARSE_ERRORS as e:
            logger.debug(f"{func.__name__} could not parse input: {e}")
            return ExtractedMetadata()
    return wrapper


class MetadataExtractor:
    """Decode caption-like metadata embedded in JPEG, WebP, MP4 and XMP payloads."""

    @staticmethod
    @_never_raises
    def extract_from_xmp(data: bytes) -> ExtractedMetadata:
        """
        Extract dc:subject, dc:description and xmp:Comment from an XMP packet.

        Args:
            data: Raw bytes that contain an <x:xmpmeta> packet, or bare XML

        Returns:
            ExtractedMetadata with whichever fields were present
        """
        text = data.decode("utf-8", errors="replace")
        start = text.find(XMP_START)
        if start != -1:
            end = text.find(XMP_END, start)
            if end != -1:
                text = text[start:end + len(XMP_END)]

        fields: Dict[str, str] = {}

        match = DESCRIPTION_RE.search(text)
        if match:
            inner = match.group(1)
            li = RDF_LI_RE.search(inner)
            raw = li.group(1) if li else TAG_RE.sub("", inner)
            if raw.strip():
                fields["description"] = decode_xml_entities(raw.strip())

        match = SUBJECT_RE.search(text)
        if match:
            inner = match.group(1)
            items = [decode_xml_entities(li.strip()) for li in RDF_LI_RE.findall(inner)]
            items = [item for item in items if item]
            if items:
                fields["subject"] = ", ".join(items)
            else:
                raw = TAG_RE.sub("", inner).strip()
                if raw:
                    fields["subject"] = decode_xml_entities(raw)

        match = COMMENT_RE.search(text)
        if match and match.group(1).strip():
            fields["comment"] = decode_xml_entities(match.group(1).strip())

        return ExtractedMetadata(**fields)

    @staticmethod
    @_never_raises
    def extract_from_jpeg_iptc(data: bytes) -> ExtractedMetadata:
        """
        Read IPTC IIM fields from the Photoshop APP13 segment of a JPEG.

        Args:
            data: Complete JPEG file contents

        Returns:
            ExtractedMetadata from the first IPTC block that carries a field
        """
        if len(data) < 4 or data[0:2] != b"\xff\xd8":
            raise MalformedInput("missing JPEG SOI marker")

        pos = 2
        length = len(data)
        while pos + 4 <= length:
            if data[pos] != 0xFF:
                break
            marker = data[pos + 1]
            pos += 2
            if marker == 0xDA:
                break
            (segment_length,) = struct.unpack_from(">H", data, pos)
            if segment_length < 2:
                break
            segment_end = min(pos + segment_length, length)
            if marker == 0xED:
                found = _parse_photoshop_irb(data[pos + 2:segment_end])
                if not found.is_empty():
                    return found
            pos = segment_end

        return ExtractedMetadata()

    @staticmethod
    @_never_raises
    def parse_tiff(data: bytes) -> ExtractedMetadata:
        """
        Read ImageDescription and XPSubject from IFD0 of a TIFF/EXIF block.

        Args:
            data: TIFF structure starting at the byte-order marker

        Returns:
            ExtractedMetadata with description and/or subject
        """
        if len(data) < 8:
            raise MalformedInput("TIFF header too short")
        byte_order = data[0:2]
        if byte_order == b"II":
            endian = "<"
        elif byte_order == b"MM":
            endian = ">"
        else:
            raise MalformedInput("unknown TIFF byte order")

        (magic,) = struct.unpack_from(endian + "H", data, 2)
        if magic != 0x2A:
            raise MalformedInput("bad TIFF magic")
        (ifd0,) = struct.unpack_from(endian + "I", data, 4)
        (count,) = struct.unpack_from(endian + "H", data, ifd0)

        fields: Dict[str, str] = {}
        for index in range(count):
            base = ifd0 + 2 + index * 12
            if base + 12 > len(data):
                break
            tag, value_type, value_count = struct.unpack_from(endian + "HHI", data, base)
            value_size = value_count * TIFF_TYPE_SIZES.get(value_type, 1)
            if value_size <= 4:
                raw = data[base + 8:base + 8 + value_size]
            else:
                (offset,) = struct.unpack_from(endian + "I", data, base + 8)
                if offset + value_size > len(data):
                    continue
                raw = data[offset:offset + value_size]

            if tag == TIFF_IMAGE_DESCRIPTION:
                text = decode_text(raw).rstrip("\x00").strip()
                if text:
                    fields["description"] = text
            elif tag == TIFF_XP_SUBJECT:
                even = raw[:len(raw) - len(raw) % 2]
                text = even.decode("utf-16-le", errors="replace").split("\x00", 1)[0]
                if text:
                    fields["subject"] = text

        return ExtractedMetadata(**fields)

    @staticmethod
    @_never_raises
    def extract_exif_from_webp(data: bytes) -> ExtractedMetadata:
        for chunk_type, payload in _iter_webp_chunks(data):
            if chunk_type == b"EXIF":
                if payload.startswith(EXIF_PREAMBLE):
                    payload = payload[len(EXIF_PREAMBLE):]
                return MetadataExtractor.parse_tiff(payload)
        return ExtractedMetadata()

    @staticmethod
    @_never_raises
    def extract_xmp_from_webp(data: bytes) -> ExtractedMetadata:
        for chunk_type, payload in _iter_webp_chunks(data):
            if chunk_type == b"XMP ":
                return MetadataExtractor.extract_from_xmp(payload)
        return ExtractedMetadata()

    @staticmethod
    @_never_raises
    def extract_from_mp4(data: bytes) -> ExtractedMetadata:
        """
        Walk the ISO-BMFF box tree looking for ©cmt and desc metadata atoms.

        Args:
            data: Complete MP4/MOV file contents

        Returns:
            ExtractedMetadata with comment and/or description
        """
        fields: Dict[str, str] = {}
        _walk_boxes(data, 0, len(data), fields, depth=0)
        return ExtractedMetadata(**fields)

    @staticmethod
    def extract(
        data: bytes,
        mime: str,
        path: Optional[Path] = None,
        runner: Optional[Any] = None,
    ) -> ExtractedMetadata:
        """
        Auto-detect the container from the mime type and extract metadata.

        Args:
            data: File contents
            mime: Declared or guessed mime type
            path: Real file path, enables the external probe fallback
            runner: ProcessRunner used for the fallback probes

        Returns:
            ExtractedMetadata, empty when nothing could be decoded
        """
        lower = (mime or "").lower()
        is_jpeg = "jpeg" in lower or "jpg" in lower
        is_webp = "webp" in lower
        is_mp4 = "mp4" in lower

        if is_jpeg:
            extracted = merge_metadata(
                MetadataExtractor.extract_from_xmp(data),
                MetadataExtractor.extract_from_jpeg_iptc(data),
            )
        elif is_webp:
            exif = MetadataExtractor.extract_exif_from_webp(data)
            xmp = MetadataExtractor.extract_xmp_from_webp(data)
            scan = ExtractedMetadata()
            if exif.is_empty() and xmp.is_empty():
                scan = MetadataExtractor.extract_from_xmp(data)
            extracted = merge_metadata(scan, xmp, exif)
        elif is_mp4:
            extracted = merge_metadata(
                MetadataExtractor.extract_from_xmp(data),
                MetadataExtractor.extract_from_mp4(data),
            )
        else:
            extracted = MetadataExtractor.extract_from_xmp(data)

        if path is None or runner is None:
            return extracted

        if (is_jpeg or is_webp) and not (extracted.subject or extracted.description):
            extracted = fill_missing(extracted, _exiftool_fields(runner, path))
        elif is_mp4 and not (extracted.comment and extracted.description):
            extracted = fill_missing(extracted, _ffprobe_fields(runner, path))
        return extracted


def map_fields_by_mime(extracted: ExtractedMetadata, mime: str) -> MappedFields:
    """Map extracted metadata onto catalog caption/alternative text."""
    lower = (mime or "").lower()
    if "jpeg" in lower or "jpg" in lower or "webp" in lower:
        return MappedFields(caption=extracted.subject, alternative_text=extracted.description)
    if "video/mp4" in lower:
        return MappedFields(caption=extracted.comment, alternative_text=extracted.description)
    return MappedFields()


def pending_field_updates(mapped: MappedFields, media: Dict[str, Any]) -> Dict[str, str]:
    """Only fill caption/alternativeText that are currently unset on the media file."""
    updates: Dict[str, str] = {}
    if mapped.caption and not media.get("caption"):
        updates["caption"] = mapped.caption
    if mapped.alternative_text and not media.get("alternativeText"):
        updates["alternativeText"] = mapped.alternative_text
    return updates


def _parse_photoshop_irb(segment: bytes) -> ExtractedMetadata:
    if not segment.startswith(PHOTOSHOP_HEADER):
        return ExtractedMetadata()

    pos = len(PHOTOSHOP_HEADER)
    end = len(segment)
    while pos + 12 <= end:
        if segment[pos:pos + 4] != b"8BIM":
            break
        (resource_id,) = struct.unpack_from(">H", segment, pos + 4)
        pos += 6
        name_length = segment[pos]
        pos += 1 + name_length
        if (1 + name_length) % 2:
            pos += 1
        if pos + 4 > end:
            break
        (size,) = struct.unpack_from(">I", segment, pos)
        pos += 4
        if pos + size > end:
            break
        block = segment[pos:pos + size]
        pos += size + size % 2
        if resource_id == IPTC_RESOURCE_ID:
            found = _parse_iptc(block)
            if not found.is_empty():
                return found
    return ExtractedMetadata()


def _parse_iptc(data: bytes) -> ExtractedMetadata:
    fields: Dict[str, str] = {}
    declared_utf8 = False
    pos = 0
    length = len(data)
    while pos + 5 <= length:
        if data[pos] != 0x1C:
            pos += 1
            continue
        record, dataset = data[pos + 1], data[pos + 2]
        (size,) = struct.unpack_from(">H", data, pos + 3)
        pos += 5
        if size & 0x8000:
            if pos + 4 > length:
                break
            (size,) = struct.unpack_from(">I", data, pos)
            pos += 4
        if pos + size > length:
            break
        value = data[pos:pos + size]
        pos += size

        if record == 1 and dataset == 90:
            declared_utf8 = value.startswith(IPTC_UTF8_MARKER)
        elif record == 2 and dataset in IPTC_FIELDS:
            if declared_utf8:
                text = value.decode("utf-8", errors="replace")
            else:
                text = decode_text(value)
            text = text.rstrip("\x00")
            if text:
                fields[IPTC_FIELDS[dataset]] = text
    return ExtractedMetadata(**fields)


def _iter_webp_chunks(data: bytes) -> Iterator[Tuple[bytes, bytes]]:
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WEBP":
        raise MalformedInput("not a RIFF/WEBP container")
    pos = 12
    length = len(data)
    while pos + 8 <= length:
        chunk_type = data[pos:pos + 4]
        (size,) = struct.unpack_from("<I", data, pos + 4)
        start = pos + 8
        yield chunk_type, data[start:min(start + size, length)]
        pos = start + size + size % 2


def _walk_boxes(data: bytes, start: int, end: int, fields: Dict[str, str], depth: int) -> None:
    if depth > MP4_MAX_DEPTH:
        return
    pos = start
    while pos + 8 <= end:
        (size,) = struct.unpack_from(">I", data, pos)
        box_type = data[pos + 4:pos + 8]
        header = 8
        if size == 1:
            if pos + 16 > end:
                break
            (size,) = struct.unpack_from(">Q", data, pos + 8)
            header = 16
        if size < header:
            break
        body_start = pos + header
        body_end = min(pos + size, end)

        if box_type == b"meta":
            _walk_boxes(data, min(body_start + 4, body_end), body_end, fields, depth + 1)
        elif box_type in MP4_CONTAINER_BOXES:
            _walk_boxes(data, body_start, body_end, fields, depth + 1)
        elif box_type in MP4_TEXT_BOXES:
            text = _read_data_boxes(data, body_start, body_end)
            if text:
                fields[MP4_TEXT_BOXES[box_type]] = text
        pos += size


def _read_data_boxes(data: bytes, start: int, end: int) -> Optional[str]:
    found = None
    pos = start
    while pos + 8 <= end:
        (size,) = struct.unpack_from(">I", data, pos)
        if size < 8:
            break
        box_type = data[pos + 4:pos + 8]
        box_end = min(pos + size, end)
        if box_type == b"data":
            # version/flags + well-known type, then an optional zero locale
            payload_start = pos + 16
            if payload_start + 4 <= box_end and data[payload_start:payload_start + 4] == b"\x00\x00\x00\x00":
                payload_start += 4
            text = data[payload_start:box_end].decode("utf-8", errors="replace").replace("\x00", "").strip()
            if text:
                found = text
        pos += size
    return found


def _exiftool_fields(runner: Any, path: Path) -> Dict[str, Optional[str]]:
    meta = runner.exiftool(path)
    if not meta:
        return {}
    subject = meta.get("Subject") or meta.get("XPSubject")
    description = meta.get("Description") or meta.get("ImageDescription")
    if isinstance(subject, list):
        subject = ", ".join(str(s) for s in subject)
    logger.debug(f"exiftool fallback for {path.name}: subject={subject!r} description={description!r}")
    return {
        "subject": str(subject).strip() if subject else None,
        "description": str(description).strip() if description else None,
    }


def _ffprobe_fields(runner: Any, path: Path) -> Dict[str, Optional[str]]:
    tags = (runner.probe(path).get("format") or {}).get("tags") or {}
    lowered = {str(k).lower(): v for k, v in tags.items() if isinstance(v, str)}
    comment = lowered.get("comment", "").strip() or lowered.get("title", "").strip()
    description = lowered.get("description", "").strip()
    return {"comment": comment or None, "description": description or None}
