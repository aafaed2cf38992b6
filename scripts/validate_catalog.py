#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from collections import Counter
from pathlib import Path

import yaml

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from realty_agent.realty_core.catalog import CatalogValidationError, load_catalog


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate the property listings catalog")
    parser.add_argument(
        "--path",
        type=Path,
        default=None,
        help="Path to catalog yaml (default: catalog/properties.yaml)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        catalog = load_catalog(args.path)
    except FileNotFoundError as exc:
        print(f"[ERROR] Catalog file not found: {exc.filename}", file=sys.stderr)
        return 1
    except yaml.YAMLError as exc:
        print(f"[ERROR] Catalog is not valid YAML: {exc}", file=sys.stderr)
        return 1
    except CatalogValidationError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    properties = catalog.properties
    by_location = Counter(item.location for item in properties)
    by_tenure = Counter(item.tenure for item in properties)

    print(f"[OK] Catalog is valid: {len(properties)} properties")
    print("[INFO] Properties by location:")
    for location, count in sorted(by_location.items()):
        print(f"  - {location}: {count}")

    print("[INFO] Properties by tenure:")
    for tenure, count in sorted(by_tenure.items()):
        print(f"  - {tenure}: {count}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
