"""
XMP packet reading and merging.

Packets are parsed with ElementTree. Merging edits only the properties being written (dc:title,
photoshop:Headline, dc:description, dc:subject and the exif:GPS* coordinates); every other
property, namespace and rdf:Description in an existing packet is kept. Prefixes outside the
registered well-known set come out as ns0, ns1, ... with their namespace URIs unchanged.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from exif_ai import gps
from exif_ai.errors import ParseError
from exif_ai.models import Coordinate


NAMESPACES = {
    "x": "adobe:ns:meta/",
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "dc": "http://purl.org/dc/elements/1.1/",
    "photoshop": "http://ns.adobe.com/photoshop/1.0/",
    "exif": "http://ns.adobe.com/exif/1.0/",
    "xmp": "http://ns.adobe.com/xap/1.0/",
}
# Further well-known prefixes, registered so foreign properties keep their usual names.
COMMON_NAMESPACES = {
    "xmpMM": "http://ns.adobe.com/xap/1.0/mm/",
    "xmpRights": "http://ns.adobe.com/xap/1.0/rights/",
    "tiff": "http://ns.adobe.com/tiff/1.0/",
    "aux": "http://ns.adobe.com/exif/1.0/aux/",
    "crs": "http://ns.adobe.com/camera-raw-settings/1.0/",
    "lr": "http://ns.adobe.com/lightroom/1.0/",
    "Iptc4xmpCore": "http://iptc.org/std/Iptc4xmpCore/1.0/xmlns/",
    "Iptc4xmpExt": "http://iptc.org/std/Iptc4xmpExt/2008-02-29/",
    "stEvt": "http://ns.adobe.com/xap/1.0/sType/ResourceEvent#",
    "stRef": "http://ns.adobe.com/xap/1.0/sType/ResourceRef#",
}
XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"
PACKET_BEGIN = '<?xpacket begin="\ufeff" id="W5M0MpCehiHzreSzNTczkc9d"?>\n'
PACKET_END = '\n<?xpacket end="w"?>'

# The ElementTree prefix registry is process-wide; it is only written here, never per packet.
for _prefix, _uri in {**COMMON_NAMESPACES, **NAMESPACES}.items():
    ET.register_namespace(_prefix, _uri)


def sidecar_path_for(path: Path) -> Path:
    """
    Return the sidecar location: the full file name plus ".xmp", so shot pairs sharing a stem
    (IMG_1.CR2 and IMG_1.HEIC) never share a sidecar.

    Examples:
        >>> sidecar_path_for(Path("raw/IMG_0001.CR3")).name
        'IMG_0001.CR3.xmp'

    """
    return path.with_name(f"{path.name}.xmp")


def _q(prefix: str, name: str) -> str:
    return f"{{{NAMESPACES[prefix]}}}{name}"


RDF_RDF = _q("rdf", "RDF")
RDF_DESCRIPTION = _q("rdf", "Description")
RDF_ABOUT = _q("rdf", "about")
RDF_ALT = _q("rdf", "Alt")
RDF_BAG = _q("rdf", "Bag")
RDF_LI = _q("rdf", "li")
DC_TITLE = _q("dc", "title")
DC_DESCRIPTION = _q("dc", "description")
DC_SUBJECT = _q("dc", "subject")
PS_HEADLINE = _q("photoshop", "Headline")
EXIF_GPS_VERSION = _q("exif", "GPSVersionID")
EXIF_GPS_LATITUDE = _q("exif", "GPSLatitude")
EXIF_GPS_LONGITUDE = _q("exif", "GPSLongitude")


@dataclass
class XmpFields:
    title: str | None = None
    description: str | None = None
    keywords: list[str] = field(default_factory=list)
    gps: Coordinate | None = None
    gps_present: bool = False


def _decode(packet: bytes | str) -> str:
    text = packet.decode("utf-8", errors="replace") if isinstance(packet, bytes) else packet
    return text.strip().strip("\0").lstrip("\ufeff")


def _parse_root(packet: bytes | str) -> ET.Element:
    text = _decode(packet)
    try:
        return ET.fromstring(text)  # noqa: S314
    except ET.ParseError as exc:
        msg = f"malformed XMP packet: {exc}"
        raise ParseError(msg) from exc


def _descriptions(root: ET.Element) -> list[ET.Element]:
    if root.tag == RDF_DESCRIPTION:
        return [root]
    return list(root.iter(RDF_DESCRIPTION))


def _property(descriptions: list[ET.Element], qname: str) -> ET.Element | str | None:
    """Find a property in element form, or in attribute (shorthand) form."""
    for desc in descriptions:
        element = desc.find(qname)
        if element is not None:
            return element
        if qname in desc.attrib:
            return desc.attrib[qname]
    return None


def _alt_text(value: ET.Element | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    items = list(value.iter(RDF_LI))
    if not items:
        return (value.text or "").strip() or None
    preferred = next((li for li in items if li.get(XML_LANG) == "x-default"), items[0])
    return (preferred.text or "").strip() or None


def _bag_items(value: ET.Element | str | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [(li.text or "").strip() for li in value.iter(RDF_LI) if (li.text or "").strip()]


def _simple_text(value: ET.Element | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return (value.text or "").strip() or None


def parse_packet(packet: bytes | str) -> XmpFields:
    """
    Extract title, description, keywords and GPS from an XMP packet.

    Raises:
        ParseError: The packet is not well-formed XML

    """
    root = _parse_root(packet)
    descriptions = _descriptions(root)
    fields = XmpFields(
        title=_alt_text(_property(descriptions, DC_TITLE))
        or _simple_text(_property(descriptions, PS_HEADLINE)),
        description=_alt_text(_property(descriptions, DC_DESCRIPTION)),
        keywords=_bag_items(_property(descriptions, DC_SUBJECT)),
    )

    lat_text = _simple_text(_property(descriptions, EXIF_GPS_LATITUDE))
    lon_text = _simple_text(_property(descriptions, EXIF_GPS_LONGITUDE))
    if lat_text is not None or lon_text is not None:
        lat, lon = gps.parse_xmp(lat_text), gps.parse_xmp(lon_text)
        if lat is not None and lon is not None:
            fields.gps = Coordinate(latitude=lat, longitude=lon)
        else:
            fields.gps_present = True
    return fields


def _new_root() -> ET.Element:
    root = ET.Element(_q("x", "xmpmeta"))
    rdf = ET.SubElement(root, RDF_RDF)
    ET.SubElement(rdf, RDF_DESCRIPTION, {RDF_ABOUT: ""})
    return root


def _target_description(root: ET.Element) -> ET.Element:
    descriptions = _descriptions(root)
    if descriptions:
        return descriptions[0]
    rdf = root if root.tag == RDF_RDF else root.find(f".//{RDF_RDF}")
    if rdf is None:
        rdf = ET.SubElement(root, RDF_RDF)
    return ET.SubElement(rdf, RDF_DESCRIPTION, {RDF_ABOUT: ""})


def _remove_property(root: ET.Element, qname: str) -> None:
    for desc in _descriptions(root):
        desc.attrib.pop(qname, None)
        for element in desc.findall(qname):
            desc.remove(element)


def _set_alt(desc: ET.Element, qname: str, text: str) -> None:
    container = ET.SubElement(desc, qname)
    alt = ET.SubElement(container, RDF_ALT)
    item = ET.SubElement(alt, RDF_LI, {XML_LANG: "x-default"})
    item.text = text


def _set_simple(desc: ET.Element, qname: str, text: str) -> None:
    ET.SubElement(desc, qname).text = text


def merge_packet(
    existing: bytes | str | None,
    *,
    title: str | None = None,
    description: str | None = None,
    keywords: list[str] | None = None,
    coordinate: Coordinate | None = None,
) -> bytes:
    """
    Merge fields into an existing XMP packet (or a fresh one) and return the serialised packet.

    Only the properties for arguments that are not None are replaced.

    Raises:
        ParseError: `existing` is not well-formed XML

    """
    if existing:
        root = _parse_root(existing)
    else:
        root = _new_root()
    desc = _target_description(root)

    if title is not None:
        _remove_property(root, DC_TITLE)
        _remove_property(root, PS_HEADLINE)
        _set_alt(desc, DC_TITLE, title)
        _set_simple(desc, PS_HEADLINE, title)
    if description is not None:
        _remove_property(root, DC_DESCRIPTION)
        _set_alt(desc, DC_DESCRIPTION, description)
    if keywords is not None:
        _remove_property(root, DC_SUBJECT)
        bag = ET.SubElement(ET.SubElement(desc, DC_SUBJECT), RDF_BAG)
        for keyword in keywords:
            ET.SubElement(bag, RDF_LI).text = keyword
    if coordinate is not None:
        for qname in (EXIF_GPS_VERSION, EXIF_GPS_LATITUDE, EXIF_GPS_LONGITUDE):
            _remove_property(root, qname)
        _set_simple(desc, EXIF_GPS_VERSION, "2.3.0.0")
        _set_simple(desc, EXIF_GPS_LATITUDE, gps.format_xmp(coordinate.latitude, latitude=True))
        _set_simple(
            desc, EXIF_GPS_LONGITUDE, gps.format_xmp(coordinate.longitude, latitude=False)
        )

    body = ET.tostring(root, encoding="unicode")
    logger.debug("xmp_packet_merged", size=len(body), had_existing=bool(existing))
    return (PACKET_BEGIN + body + PACKET_END).encode("utf-8")
