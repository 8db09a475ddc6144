"""
Index the zones covering a bounding box into an R*-tree.

Every zone at the chosen level that intersects the box is stored under its
hexadecimal id, with the envelope of its boundary as the indexed envelope.
The resulting index can be served by the API (INDEX_STORAGE_PATH) or
queried directly with --query.

Usage:
    python scripts/build_zone_index.py --bbox -74.02 40.70 -73.93 40.80 --level 8
    python scripts/build_zone_index.py --bbox -74.02 40.70 -73.93 40.80 --level 8 --backend sql
    python scripts/build_zone_index.py --path data/nyc --query -73.99 40.75 -73.98 40.76
"""
import argparse
import logging
import time

from src.dggs.engine import GridEngine
from src.dggs.reference_system import H3ReferenceSystem
from src.index.envelope import Envelope
from src.index.mappers import IndexedElement
from src.index.store import BACKENDS, open_index


def index_zones(tree, reference_system, bbox, level):
    """
    Insert every zone of `level` intersecting `bbox`.

    Returns:
        Number of zones inserted
    """
    count = 0
    for zone in reference_system.search(bbox, level):
        min_lng, min_lat, max_lng, max_lat = zone.bounds()
        tree.insert(IndexedElement(zone.id, Envelope(min_lng, min_lat, max_lng, max_lat)))
        count += 1
        if count % 1000 == 0:
            print(f"  {count} zones indexed...")
    return count


def main():
    parser = argparse.ArgumentParser(description="Build an R*-tree of grid zones")
    parser.add_argument("--path", default="./data/index", help="Index directory (default: ./data/index)")
    parser.add_argument("--backend", choices=BACKENDS, default=None, help="Element mapper backend")
    parser.add_argument("--bbox", type=float, nargs=4, metavar=("MIN_LON", "MIN_LAT", "MAX_LON", "MAX_LAT"),
                        help="Area to index")
    parser.add_argument("--level", type=int, default=7, help="Zone level to index (default: 7)")
    parser.add_argument("--query", type=float, nargs=4, metavar=("MINX", "MINY", "MAXX", "MAXY"),
                        help="Search the index instead of building it")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.bbox is None and args.query is None:
        parser.error("one of --bbox or --query is required")

    with open_index(args.path, backend=args.backend) as tree:
        if args.query is not None:
            ids = tree.search_id(Envelope(*args.query))
            print(f"{len(ids)} elements intersect {args.query}:")
            for element_id in sorted(ids):
                element = tree.mapper.get_object_from_tree_identifier(element_id)
                print(f"  {element_id:>8}  {element.identifier if element else '?'}")
            return

        reference_system = H3ReferenceSystem(GridEngine().initialize())
        print("=" * 60)
        print(f"Indexing level {args.level} zones in {args.bbox}")
        print(f"Index:   {args.path}")
        print("=" * 60)

        start = time.time()
        count = index_zones(tree, reference_system, args.bbox, args.level)
        elapsed = time.time() - start

        print()
        print(f"Indexed {count} zones in {elapsed:.1f}s")
        print(f"Tree now holds {len(tree)} elements, height {tree.height}")


if __name__ == "__main__":
    main()
