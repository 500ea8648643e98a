"""Tests for XMP packet merging and serialisation."""

from pathlib import Path

from exif_ai import xmp


FOREIGN_PACKET = (
    b'<x:xmpmeta xmlns:x="adobe:ns:meta/"><rdf:RDF '
    b'xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">'
    b'<rdf:Description rdf:about="" xmlns:dc="urn:example:not-dublin-core" '
    b'xmlns:acme="http://ns.adobe.com/photoshop/1.0/" xmlns:vendor="urn:example:vendor" '
    b'acme:Credit="Someone" vendor:Rating="3" dc:format="odd"/>'
    b"</rdf:RDF></x:xmpmeta>"
)


def test_packet_prefixes_do_not_leak_into_other_packets() -> None:
    """Prefixes declared by one packet never change how later packets are serialised."""
    fresh = xmp.merge_packet(None, title="Harbour")

    merged = xmp.merge_packet(FOREIGN_PACKET, title="Rebound")

    assert xmp.merge_packet(None, title="Harbour") == fresh
    assert b"<dc:title>" in fresh
    assert b"<photoshop:Headline>" in fresh
    assert xmp.parse_packet(merged).title == "Rebound"
    assert b'photoshop:Credit="Someone"' in merged
    assert b"urn:example:vendor" in merged
    assert b"urn:example:not-dublin-core" in merged


def test_sidecar_name_keeps_the_original_extension() -> None:
    """Sidecars are named after the full file name, so shot pairs never share one."""
    raw = xmp.sidecar_path_for(Path("shoot/IMG_1.CR2"))
    heic = xmp.sidecar_path_for(Path("shoot/IMG_1.HEIC"))

    assert raw.name == "IMG_1.CR2.xmp"
    assert heic.name == "IMG_1.HEIC.xmp"
    assert raw.parent == heic.parent
