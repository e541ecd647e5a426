#!/usr/bin/env python3
"""
Seed book variants from a JSON file.

Accepts either a list of entries or an object with an ``items`` list. Each
entry needs a sku; title, format, price and stock are read from a few
common spellings (``price`` in rupees or ``price_cents``, ``stock`` or
``quantity``). Existing SKUs are updated in place.

Usage:
    python scripts/seed_variants.py --file catalogue.json
"""
import argparse
import json
import logging
import os
import sys

# allow running from repo/scripts
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from bookstore.db import SessionLocal, init_db
from bookstore.models.variant import BookFormat
from bookstore.repositories.variant_repo import VariantRepository
from bookstore.utils.transactions import unit_of_work

log = logging.getLogger("seed_variants")

KNOWN_FORMATS = {f.value for f in BookFormat}


def _normalize_entry(entry: dict) -> dict:
    sku = entry.get("sku") or entry.get("id")
    title = entry.get("title") or entry.get("name") or ""

    if entry.get("price_cents") is not None:
        price_cents = int(entry["price_cents"])
    else:
        try:
            price_cents = int(round(float(entry.get("price", 0)) * 100))
        except (TypeError, ValueError):
            price_cents = 0

    try:
        stock = int(entry.get("stock", entry.get("quantity", 0)) or 0)
    except (TypeError, ValueError):
        stock = 0

    fmt = str(entry.get("format") or BookFormat.PAPERBACK.value).lower()
    if fmt not in KNOWN_FORMATS:
        log.warning("sku %s: unknown format %r, using paperback", sku, fmt)
        fmt = BookFormat.PAPERBACK.value

    return {
        "sku": str(sku) if sku else None,
        "title": title,
        "price_cents": max(0, price_cents),
        "stock_quantity": max(0, stock),
        "format": fmt,
    }


def load_entries(path: str) -> list:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        source = data["items"] if isinstance(data.get("items"), list) else list(data.values())
    elif isinstance(data, list):
        source = data
    else:
        source = []
    return [_normalize_entry(e) for e in source if isinstance(e, dict)]


def seed_from_file(path: str, db=None) -> int:
    """Upsert every entry of ``path``; returns the number of variants written."""
    entries = load_entries(path)
    own_session = db is None
    db = db or SessionLocal()
    seeded = 0
    try:
        with unit_of_work(db):
            repo = VariantRepository(db)
            for entry in entries:
                if not entry["sku"]:
                    continue
                repo.create_or_update(**entry)
                seeded += 1
    finally:
        if own_session:
            db.close()
    log.info("seeded %s variants from %s", seeded, path)
    return seeded


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", "-f", required=True, help="Path to a JSON list of variants")
    args = parser.parse_args()
    if not os.path.exists(args.file):
        print("File not found:", args.file)
        sys.exit(1)
    init_db(reset=False)
    seed_from_file(args.file)
