"""Tests for embedded metadata extraction."""

from builders import (
    FakeRunner,
    MINIMAL_JPEG,
    iptc_dataset,
    iptc_dataset_extended,
    jpeg_with_iptc,
    mp4_with_text,
    riff_webp,
    tiff_with_description,
    tiff_with_xp_subject,
)
from extractors import (
    MetadataExtractor,
    decode_text,
    map_fields_by_mime,
    pending_field_updates,
    repair_mojibake,
)
from models import ExtractedMetadata, MappedFields


def test_iptc_description_ascii():
    data = jpeg_with_iptc(iptc_dataset(2, 120, b"Sunset over the bay"))

    extracted = MetadataExtractor.extract_from_jpeg_iptc(data)

    assert extracted.description == "Sunset over the bay"


def test_iptc_description_latin1():
    data = jpeg_with_iptc(iptc_dataset(2, 120, "Café au lait".encode("latin-1")))

    extracted = MetadataExtractor.extract_from_jpeg_iptc(data)

    assert extracted.description == "Café au lait"


def test_iptc_all_fields():
    data = jpeg_with_iptc(
        iptc_dataset(2, 5, b"Holidays"),
        iptc_dataset(2, 120, b"Beach day"),
        iptc_dataset(2, 116, b"shot on film"),
    )

    extracted = MetadataExtractor.extract(data, "image/jpeg")

    assert extracted == ExtractedMetadata(subject="Holidays", description="Beach day", comment="shot on film")


def test_iptc_declared_utf8_charset():
    data = jpeg_with_iptc(
        iptc_dataset(1, 90, b"\x1b%G"),
        iptc_dataset(2, 120, "Zürich – Nacht".encode("utf-8")),
    )

    assert MetadataExtractor.extract_from_jpeg_iptc(data).description == "Zürich – Nacht"


def test_iptc_double_encoded_text_is_repaired():
    mangled = "Café".encode("utf-8").decode("latin-1").encode("utf-8")
    data = jpeg_with_iptc(iptc_dataset(2, 120, mangled))

    assert MetadataExtractor.extract_from_jpeg_iptc(data).description == "Café"


def test_iptc_extended_length_dataset():
    caption = ("Long caption " * 10).strip().encode("ascii")
    data = jpeg_with_iptc(iptc_dataset_extended(2, 120, caption), iptc_dataset(2, 5, b"After"))

    extracted = MetadataExtractor.extract_from_jpeg_iptc(data)

    assert extracted.description == caption.decode("ascii")
    assert extracted.subject == "After"


def test_jpeg_without_app13_is_empty():
    assert MetadataExtractor.extract_from_jpeg_iptc(MINIMAL_JPEG).is_empty()
    assert MetadataExtractor.extract_from_jpeg_iptc(b"not a jpeg").is_empty()


def test_webp_exif_description():
    data = riff_webp((b"VP8 ", b"\x00" * 10), (b"EXIF", tiff_with_description(b"Mountain lake")))

    extracted = MetadataExtractor.extract(data, "image/webp")

    assert extracted.description == "Mountain lake"


def test_webp_exif_with_app1_preamble():
    data = riff_webp((b"EXIF", b"Exif\x00\x00" + tiff_with_description(b"Old town square")))

    assert MetadataExtractor.extract_exif_from_webp(data).description == "Old town square"


def test_tiff_xp_subject_is_utf16():
    data = tiff_with_xp_subject("Berge und Seen")

    assert MetadataExtractor.parse_tiff(data).subject == "Berge und Seen"


def test_tiff_big_endian():
    data = tiff_with_description(b"Harbour at night", byte_order=b"MM")

    assert data[:2] == b"MM"
    assert MetadataExtractor.parse_tiff(data).description == "Harbour at night"


def test_webp_xmp_chunk():
    xmp = (
        b'<x:xmpmeta xmlns:x="adobe:ns:meta/"><rdf:RDF><rdf:Description>'
        b"<dc:subject><rdf:Bag><rdf:li>travel</rdf:li><rdf:li>food</rdf:li></rdf:Bag></dc:subject>"
        b"</rdf:Description></rdf:RDF></x:xmpmeta>"
    )
    data = riff_webp((b"XMP ", xmp))

    assert MetadataExtractor.extract(data, "image/webp").subject == "travel, food"


def test_malformed_webp_returns_empty():
    for data in (b"", b"RIFF\x00\x00", b"RIFF\x10\x00\x00\x00WEBX", b"RIFF\xff\xff\xff\xffWEBPEXIF\xff\xff"):
        extracted = MetadataExtractor.extract(data, "image/webp")
        assert extracted.model_dump(exclude_none=True) == {}


def test_mp4_comment():
    data = mp4_with_text(b"\xa9cmt", b"Sunset at the pier\x00 ")

    extracted = MetadataExtractor.extract(data, "video/mp4")

    assert extracted.comment == "Sunset at the pier"


def test_mp4_description():
    data = mp4_with_text(b"desc", "Été à Paris".encode("utf-8"))

    assert MetadataExtractor.extract_from_mp4(data).description == "Été à Paris"


def test_mp4_64bit_box_size():
    data = mp4_with_text(b"\xa9cmt", b"Long take", large=True)

    assert data[16:24] == b"\x00\x00\x00\x01moov"
    assert MetadataExtractor.extract_from_mp4(data).comment == "Long take"


def test_mp4_truncated_box_is_empty():
    data = mp4_with_text(b"\xa9cmt", b"hello")[:30]

    assert MetadataExtractor.extract_from_mp4(data).is_empty()


def test_xmp_description_and_entities():
    xml = (
        b"<x:xmpmeta><dc:description><rdf:Alt><rdf:li xml:lang=\"x-default\">Fish &amp; chips</rdf:li>"
        b"</rdf:Alt></dc:description><xmp:Comment>it&apos;s good</xmp:Comment></x:xmpmeta>"
    )

    extracted = MetadataExtractor.extract_from_xmp(xml)

    assert extracted.description == "Fish & chips"
    assert extracted.comment == "it's good"


def test_xmp_plain_text_subject():
    extracted = MetadataExtractor.extract_from_xmp(b"<dc:subject>street</dc:subject>")

    assert extracted.subject == "street"


def test_exiftool_fallback_fills_missing_fields(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(MINIMAL_JPEG)
    runner = FakeRunner(exif={"Subject": ["cats", "dogs"], "ImageDescription": "Pets"})

    extracted = MetadataExtractor.extract(MINIMAL_JPEG, "image/jpeg", path=path, runner=runner)

    assert extracted.subject == "cats, dogs"
    assert extracted.description == "Pets"


def test_exiftool_skipped_when_embedded_fields_found(tmp_path):
    data = jpeg_with_iptc(iptc_dataset(2, 120, b"From IPTC"))
    path = tmp_path / "photo.jpg"
    path.write_bytes(data)
    runner = FakeRunner(exif={"Subject": "exiftool subject", "Description": "exiftool description"})

    extracted = MetadataExtractor.extract(data, "image/jpeg", path=path, runner=runner)

    assert extracted.description == "From IPTC"
    assert extracted.subject is None
    assert "exiftool" not in runner.calls


def test_exiftool_fallback_keeps_existing_comment(tmp_path):
    data = jpeg_with_iptc(iptc_dataset(2, 116, b"iptc comment"))
    path = tmp_path / "photo.jpg"
    path.write_bytes(data)
    runner = FakeRunner(exif={"Subject": "exiftool subject", "Description": "exiftool description"})

    extracted = MetadataExtractor.extract(data, "image/jpeg", path=path, runner=runner)

    assert extracted == ExtractedMetadata(
        subject="exiftool subject", description="exiftool description", comment="iptc comment"
    )


def test_ffprobe_tags_for_mp4(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"")
    runner = FakeRunner(probe_data={"format": {"tags": {"title": "Clip title", "DESCRIPTION": "Clip desc"}}})

    extracted = MetadataExtractor.extract(b"", "video/mp4", path=path, runner=runner)

    assert extracted.comment == "Clip title"
    assert extracted.description == "Clip desc"


def test_map_fields_by_mime():
    extracted = ExtractedMetadata(subject="s", description="d", comment="c")

    assert map_fields_by_mime(extracted, "image/jpeg") == MappedFields(caption="s", alternative_text="d")
    assert map_fields_by_mime(extracted, "image/webp") == MappedFields(caption="s", alternative_text="d")
    assert map_fields_by_mime(extracted, "video/mp4") == MappedFields(caption="c", alternative_text="d")
    assert map_fields_by_mime(extracted, "image/png") == MappedFields()


def test_pending_updates_only_fill_unset_fields():
    mapped = MappedFields(caption="new caption", alternative_text="new alt")

    assert pending_field_updates(mapped, {"caption": "kept", "alternativeText": None}) == {
        "alternativeText": "new alt"
    }
    assert pending_field_updates(mapped, {"caption": "kept", "alternativeText": "kept"}) == {}


def test_decode_text_fallbacks():
    assert decode_text("naïve".encode("utf-8")) == "naïve"
    assert decode_text(b"na\xefve") == "naïve"
    assert repair_mojibake("plain text") == "plain text"
