#!/usr/bin/env python3
"""
Import a legacy JSON export of user documents into the directory.

The export is either a list of documents or an object keyed by subject id.
Both role shapes are accepted (single ``role`` string or ``roles`` array,
including the old Spanish names); they are normalised to a role set and
merged into existing entries, never replacing roles already granted.

Usage:
    python scripts/import_directory.py users.json
    python scripts/import_directory.py users.json --dry-run
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from intranet.config import get_settings
from intranet.database import utcnow
from intranet.services.directory_service import DirectoryService
from intranet.utils.patch import DirectoryPatch
from intranet.utils.roles import roles_from_document

# Legacy field name -> directory field
FIELD_MAP = {
    "email": "email",
    "displayName": "display_name",
    "display_name": "display_name",
    "nombre": "display_name",
    "photoURL": "avatar_url",
    "avatar_url": "avatar_url",
    "dni": "dni",
}


def load_documents(path: Path) -> list[tuple[str, dict[str, Any]]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [(str(key), doc) for key, doc in data.items() if isinstance(doc, dict)]
    documents = []
    for doc in data:
        subject_id = doc.get("uid") or doc.get("id") or doc.get("subject_id")
        if subject_id:
            documents.append((str(subject_id), doc))
    return documents


def patch_from_document(doc: dict[str, Any]) -> DirectoryPatch:
    fields: dict[str, Any] = {}
    for source, target in FIELD_MAP.items():
        value = doc.get(source)
        if isinstance(value, str) and value.strip() and target not in fields:
            fields[target] = value.strip()
    return DirectoryPatch(
        fields=fields,
        add_roles=roles_from_document(doc),
        touched_at=utcnow(),
    )


async def import_directory(
    path: Path,
    dry_run: bool = False,
    database_url: Optional[str] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
):
    """Import every document, each in its own transaction. Returns (imported, skipped, failed)."""
    documents = load_documents(path)
    print(f"Found {len(documents)} documents in {path}")

    engine = None
    if session_maker is None:
        engine = create_async_engine(database_url or get_settings().database_url)
        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    imported = 0
    skipped = 0
    failed = 0

    try:
        for subject_id, doc in documents:
            try:
                patch = patch_from_document(doc)
            except ValueError as e:
                print(f"  [{subject_id}] Skipped: {e}")
                skipped += 1
                continue

            roles = ", ".join(sorted(patch.add_roles)) or "no roles"
            if dry_run:
                print(f"  [{subject_id}] Would import ({roles})")
                imported += 1
                continue

            # Each document commits on its own
            try:
                async with session_maker() as db:
                    await DirectoryService(db).apply_patch(subject_id, patch)
                    await db.commit()
            except SQLAlchemyError as e:
                print(f"  [{subject_id}] Error: {e}")
                failed += 1
                continue

            print(f"  [{subject_id}] Imported ({roles})")
            imported += 1
    finally:
        if engine is not None:
            await engine.dispose()

    print(f"\nDone! Imported: {imported}, Skipped: {skipped}, Failed: {failed}")
    return imported, skipped, failed


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("path", type=Path, help="JSON export of legacy user documents")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()

    asyncio.run(import_directory(args.path, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
