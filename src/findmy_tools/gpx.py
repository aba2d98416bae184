"""GPX track export of decrypted location reports."""

import datetime
import math
import xml.etree.ElementTree as ET
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from findmy_tools.accessory import KEY_ROTATION_SECS
from findmy_tools.reports import LocationReport

GPX_NS = "http://www.topografix.com/GPX/1/1"

EARTH_RADIUS_M = 6371000.0

ET.register_namespace("", GPX_NS)


@dataclass(frozen=True)
class TrackPoint:
    """One located report, detached from its key pair.

    Built either from a live `LocationReport` or from the dict a previous
    `fetch -o` run saved with `LocationReport.to_dict`.
    """

    key_id: str
    timestamp: datetime.datetime
    latitude: float
    longitude: float
    confidence: int = 0
    status: int = 0

    @classmethod
    def from_report(cls, report: LocationReport) -> "TrackPoint":
        return cls(
            report.key_id,
            report.timestamp,
            report.latitude,
            report.longitude,
            report.confidence,
            report.status,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackPoint":
        try:
            return cls(
                data.get("key_id", ""),
                datetime.datetime.fromtimestamp(
                    data["timestamp"], tz=datetime.timezone.utc
                ),
                float(data["lat"]),
                float(data["lon"]),
                int(data.get("confidence", 0)),
                int(data.get("status", 0)),
            )
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            raise ValueError(f"Malformed report entry {data!r}: {e}") from None

    @property
    def slot(self) -> int:
        """15-minute rotation slot the report was located in."""
        return int(self.timestamp.timestamp()) // KEY_ROTATION_SECS

    def distance_to(self, other: "TrackPoint") -> float:
        """Great-circle distance in meters."""
        phi1 = math.radians(self.latitude)
        phi2 = math.radians(other.latitude)
        dphi = phi2 - phi1
        dlmb = math.radians(other.longitude - self.longitude)
        h = (
            math.sin(dphi / 2) ** 2
            + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
        )
        return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def merge_points(
    points: Iterable[TrackPoint], radius_m: float = 50.0
) -> list[TrackPoint]:
    """Collapse repeated sightings of the same key in the same slot.

    Finders nearby often upload the same broadcast several times. Points of
    one (key id, slot) pair that lie within `radius_m` of an already kept
    point are dropped; the most confident sighting is kept first.
    """
    groups: dict[tuple[str, int], list[TrackPoint]] = {}
    for point in points:
        groups.setdefault((point.key_id, point.slot), []).append(point)

    kept: list[TrackPoint] = []
    for group in groups.values():
        group.sort(key=lambda p: (-p.confidence, p.timestamp))
        anchors: list[TrackPoint] = []
        for point in group:
            if all(point.distance_to(a) >= radius_m for a in anchors):
                anchors.append(point)
        kept.extend(anchors)

    kept.sort(key=lambda p: (p.timestamp, p.key_id))
    return kept


def build_gpx(points: Iterable[TrackPoint], name: str = "Find My") -> str:
    """Render points as a single-segment GPX 1.1 track."""
    root = ET.Element(
        f"{{{GPX_NS}}}gpx", {"version": "1.1", "creator": "findmy-tools"}
    )
    metadata = ET.SubElement(root, f"{{{GPX_NS}}}metadata")
    ET.SubElement(metadata, f"{{{GPX_NS}}}name").text = name

    trk = ET.SubElement(root, f"{{{GPX_NS}}}trk")
    ET.SubElement(trk, f"{{{GPX_NS}}}name").text = name
    seg = ET.SubElement(trk, f"{{{GPX_NS}}}trkseg")

    for p in points:
        pt = ET.SubElement(
            seg,
            f"{{{GPX_NS}}}trkpt",
            {"lat": f"{p.latitude:.7f}", "lon": f"{p.longitude:.7f}"},
        )
        ET.SubElement(pt, f"{{{GPX_NS}}}time").text = p.timestamp.astimezone(
            datetime.timezone.utc
        ).strftime("%Y-%m-%dT%H:%M:%SZ")
        ET.SubElement(pt, f"{{{GPX_NS}}}desc").text = (
            f"key={p.key_id} confidence={p.confidence} status={p.status:#04x}"
        )

    ET.indent(root)
    data = ET.tostring(root, encoding="utf-8", xml_declaration=True)
    return data.decode() + "\n"


def write_gpx(
    points: Iterable[TrackPoint],
    gpx_path: str,
    merge: bool = True,
    name: str = "Find My",
) -> int:
    """Write points to `gpx_path`, merged unless `merge` is False.

    Returns the number of track points written.
    """
    if merge:
        points = merge_points(points)
    else:
        points = sorted(points, key=lambda p: (p.timestamp, p.key_id))
    with open(gpx_path, "w", encoding="utf-8") as f:
        f.write(build_gpx(points, name))
    return len(points)
