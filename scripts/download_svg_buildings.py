"""
download_svg_buildings.py

Imports cadastre building outlines into an existing point dataset.

The building layer is requested from the cadastre WMS as an SVG (layer
CDIF:LS2, style LS2_90) for a planar window of at most 1 km x 1 km.  The
outlines are conflated against the existing dataset and the resulting change
set (new points, then new polygons) is written as JSON for the editor to
commit.

Usage:
  python scripts/download_svg_buildings.py --bbox 981200 368600 981900 369200 \\
      --dataset existing.json --output changes.json
  python scripts/download_svg_buildings.py --svg building.svg --dataset existing.json

Existing dataset format:
  {"points": [{"id": 12, "x": 981283.38, "y": 368690.15,
               "deleted": false, "incomplete": false}, ...]}
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import requests

from conflate_buildings import (
    EPSILON,
    ChangeSet,
    ExistingDataset,
    ExistingPoint,
    import_buildings,
)
from svg_buildings import BoundingBox, FatalImportError, PlanarPoint

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

BASE_URL = "https://www.cadastre.gouv.fr"
WMS_PATH = "/scpc/wms"
WMS_LAYER = "CDIF:LS2"
WMS_STYLE = "LS2_90"

# Rendered image size requested from the WMS (pixels)
IMAGE_WIDTH = 600
IMAGE_HEIGHT = 400

# Largest window side accepted, in planar units (metres)
MAX_IMPORT_EXTENT = 1000.0

CACHE_FILENAME = "building.svg"
REQUEST_TIMEOUT = 30

log = logging.getLogger(__name__)


class ImportAreaTooLargeError(FatalImportError):
    """The requested window exceeds what the WMS is allowed to serve."""


# ---------------------------------------------------------------------------
# WMS access
# ---------------------------------------------------------------------------


def check_import_area(view: BoundingBox, max_extent: float = MAX_IMPORT_EXTENT) -> None:
    """Refuse windows wider or taller than *max_extent* to avoid overloading the WMS."""
    if view.width > max_extent or view.height > max_extent:
        raise ImportAreaTooLargeError(
            f"To avoid cadastre WMS overload, building import size is limited to "
            f"{max_extent:g} x {max_extent:g} (requested {view.width:.1f} x {view.height:.1f})."
        )


def build_getmap_url(
    view: BoundingBox,
    width: int = IMAGE_WIDTH,
    height: int = IMAGE_HEIGHT,
    base_url: str = BASE_URL,
) -> str:
    """Return the GetMap URL of the building layer for *view*."""
    url = (
        f"{base_url}{WMS_PATH}?version=1.1&request=GetMap"
        f"&layers={WMS_LAYER}"
        "&format=image/svg"
        f"&bbox={view.min.x},{view.min.y},{view.max.x},{view.max.y}"
        f"&width={width}&height={height}"
        "&exception=application/vnd.ogc.se_inimage"
        f"&styles={WMS_STYLE}"
    )
    log.info("URL=%s", url)
    return url.replace(" ", "%20")


def fetch_svg(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: float = REQUEST_TIMEOUT,
) -> str:
    """
    Download the SVG at *url* and return it as text.

    Pass a prepared *session* to reuse the cookies of an existing cadastre
    session.  Any transport or HTTP error aborts the import.
    """
    http = session if session is not None else requests
    log.debug("Fetching %s", url)
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FatalImportError(f"Cadastre download failed for {url}: {exc}") from exc
    try:
        return response.content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FatalImportError(f"Cadastre response is not UTF-8: {exc}") from exc


def save_svg(svg_text: str, cache_dir: Path) -> Path:
    """Keep a copy of the raw document, replacing the previous one."""
    cache_dir.mkdir(parents=True, exist_ok=True)
    dest_path = cache_dir / CACHE_FILENAME
    dest_path.write_text(svg_text, encoding="utf-8")
    log.debug("Raw SVG saved → %s", dest_path)
    return dest_path


def download_buildings(
    view: BoundingBox,
    *,
    width: int = IMAGE_WIDTH,
    height: int = IMAGE_HEIGHT,
    session: Optional[requests.Session] = None,
    cache_dir: Optional[Path] = None,
) -> str:
    """Check the window, download its building SVG and optionally cache it."""
    check_import_area(view)
    svg_text = fetch_svg(build_getmap_url(view, width, height), session=session)
    if cache_dir is not None:
        save_svg(svg_text, cache_dir)
    return svg_text


# ---------------------------------------------------------------------------
# Dataset / change set files
# ---------------------------------------------------------------------------


def load_dataset(path: Path) -> ExistingDataset:
    """Read the existing points from a JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise FatalImportError(f"Cannot read dataset {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise FatalImportError(f"Dataset {path} is not a JSON object")

    points = []
    try:
        for entry in data.get("points", []):
            points.append(ExistingPoint(
                ident=entry["id"],
                point=PlanarPoint(float(entry["x"]), float(entry["y"])),
                deleted=bool(entry.get("deleted", False)),
                incomplete=bool(entry.get("incomplete", False)),
            ))
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise FatalImportError(f"Invalid point entry in {path}: {exc!r}") from exc
    log.info("Loaded %d existing points from %s", len(points), path)
    return ExistingDataset(points)


def write_change_set(change_set: ChangeSet, path: Path) -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(change_set.to_dict(), f, indent=2)
    except OSError as exc:
        raise FatalImportError(f"Cannot write change set {path}: {exc}") from exc
    log.info("Generated %s", path)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Import cadastre building outlines as a conflated change set.",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--svg", type=Path,
        help="Read the building SVG from a local file instead of the WMS.",
    )
    source.add_argument(
        "--bbox", type=float, nargs=4, metavar=("MINX", "MINY", "MAXX", "MAXY"),
        help="Planar window to download from the WMS.",
    )
    parser.add_argument(
        "--dataset", type=Path,
        help="JSON file with the existing points.  Omit to import into an empty dataset.",
    )
    parser.add_argument(
        "--output", type=Path, default=Path("changes.json"),
        help="Where to write the change set (default: changes.json)",
    )
    parser.add_argument(
        "--epsilon", type=float, default=EPSILON,
        help=f"Distance below which two points are merged (default: {EPSILON})",
    )
    parser.add_argument("--width", type=int, default=IMAGE_WIDTH, help="WMS image width in pixels.")
    parser.add_argument("--height", type=int, default=IMAGE_HEIGHT, help="WMS image height in pixels.")
    parser.add_argument(
        "--cache-dir", type=Path,
        help=f"Directory in which to keep the downloaded SVG as {CACHE_FILENAME}.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable DEBUG-level logging.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        if args.svg is not None:
            log.info("Reading %s", args.svg)
            try:
                svg_text = args.svg.read_text(encoding="utf-8")
            except (OSError, ValueError) as exc:
                raise FatalImportError(f"Cannot read {args.svg}: {exc}") from exc
        else:
            minx, miny, maxx, maxy = args.bbox
            try:
                view = BoundingBox(PlanarPoint(minx, miny), PlanarPoint(maxx, maxy))
            except ValueError as exc:
                log.error("%s", exc)
                return 1
            log.info("Contacting WMS Server...")
            svg_text = download_buildings(
                view, width=args.width, height=args.height, cache_dir=args.cache_dir,
            )

        dataset = load_dataset(args.dataset) if args.dataset else ExistingDataset()
        change_set = import_buildings(svg_text, dataset, epsilon=args.epsilon)
        write_change_set(change_set, args.output)
    except FatalImportError as exc:
        log.error("%s", exc)
        return 1

    if change_set.is_empty:
        log.info("Nothing new to import.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
