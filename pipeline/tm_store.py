"""SQLite-backed translation memory, scoped by language pair and optional project."""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

from lxml import etree
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from .errors import CodecError, NotFoundError, ValidationError
from .logger import get_logger
from .models import utcnow
from .similarity import normalize

logger = get_logger(__name__)

DEFAULT_TM_DB = Path.home() / ".xliff_pipeline" / "tm.db"

# '' stands for "visible to every project"; NULL would defeat the UNIQUE constraint
GLOBAL_SCOPE = ""

XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tm_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_language TEXT NOT NULL,
    target_language TEXT NOT NULL,
    source_text TEXT NOT NULL,
    project_scope TEXT NOT NULL DEFAULT '',
    target_text TEXT NOT NULL,
    usage_count INTEGER NOT NULL DEFAULT 1,
    created_by TEXT,
    created_at TEXT NOT NULL,
    last_used_at TEXT NOT NULL,
    UNIQUE (source_language, target_language, source_text, project_scope)
);
CREATE INDEX IF NOT EXISTS idx_tm_pair ON tm_entries (source_language, target_language, project_scope);
"""

_COLUMNS = (
    "id, source_language, target_language, source_text, project_scope, "
    "target_text, usage_count, created_by, created_at, last_used_at"
)


@dataclass
class TMEntry:
    entry_id: int
    source_language: str
    target_language: str
    source_text: str
    target_text: str
    project_scope: Optional[str] = None
    usage_count: int = 1
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Tuple) -> "TMEntry":
        return cls(
            entry_id=row[0],
            source_language=row[1],
            target_language=row[2],
            source_text=row[3],
            project_scope=row[4] or None,
            target_text=row[5],
            usage_count=row[6],
            created_by=row[7],
            created_at=datetime.fromisoformat(row[8]) if row[8] else None,
            last_used_at=datetime.fromisoformat(row[9]) if row[9] else None,
        )


@dataclass
class TMMatch:
    entry: TMEntry
    score: int

    @property
    def is_exact(self) -> bool:
        return self.score == 100


@dataclass
class AddEntryResult:
    entry: TMEntry
    status: str  # "added" | "updated"


@dataclass
class TMXImportResult:
    total_units: int = 0
    added_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)


class TranslationMemoryStore:
    """
    Persistent TM keyed on (source language, target language, source text, project scope).

    One connection is shared between threads behind a lock. Usage bumps for
    exact matches run on a background thread so lookups never wait on a write.
    """

    def __init__(self, db_path: Union[str, Path, None] = None,
                 fuzzy_enabled: bool = False, fuzzy_threshold: int = 75) -> None:
        if db_path is None:
            db_path = DEFAULT_TM_DB
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._lock = threading.Lock()
        self._usage_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tm-usage")
        self.fuzzy_enabled = fuzzy_enabled
        self.fuzzy_threshold = fuzzy_threshold

    @classmethod
    def from_settings(cls, settings) -> "TranslationMemoryStore":
        """Builds a store from the ``tm`` section of the settings (see SettingsManager.tm_settings)."""
        return cls(settings.db_path, fuzzy_enabled=settings.fuzzy_enabled,
                   fuzzy_threshold=settings.fuzzy_threshold)

    def add_entry(self, source_text: str, target_text: str, source_language: str,
                  target_language: str, project_scope: Optional[str] = None,
                  created_by: Optional[str] = None) -> AddEntryResult:
        """Upsert one pair. Re-adding an existing key updates the target and bumps usage."""
        missing = [
            name for name, value in (
                ("source_text", source_text),
                ("target_text", target_text),
                ("source_language", source_language),
                ("target_language", target_language),
            ) if not value
        ]
        if missing:
            raise ValidationError(f"Missing required TM fields: {', '.join(missing)}", {"missing": missing})

        now = utcnow().isoformat()
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO tm_entries (source_language, target_language, source_text, project_scope, "
                "target_text, usage_count, created_by, created_at, last_used_at) "
                "VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?) "
                "ON CONFLICT (source_language, target_language, source_text, project_scope) DO UPDATE SET "
                "target_text = excluded.target_text, "
                "usage_count = tm_entries.usage_count + 1, "
                "last_used_at = excluded.last_used_at "
                f"RETURNING {_COLUMNS}",
                (source_language, target_language, source_text, project_scope or GLOBAL_SCOPE,
                 target_text, created_by, now, now),
            )
            row = cursor.fetchone()
            self._conn.commit()

        entry = TMEntry.from_row(row)
        status = "added" if entry.usage_count == 1 else "updated"
        logger.debug(f"TM entry {entry.entry_id} {status} ({source_language}->{target_language})")
        return AddEntryResult(entry=entry, status=status)

    def get_entry(self, entry_id: int) -> TMEntry:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM tm_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"TM entry {entry_id} not found")
        return TMEntry.from_row(row)

    def find_matches(self, source_text: str, source_language: str, target_language: str,
                     project_scope: Optional[str] = None, fuzzy: Optional[bool] = None,
                     threshold: Optional[int] = None, limit: int = 10) -> List[TMMatch]:
        """
        Returns matches ranked by score, exact (100) matches first.

        A project scope sees its own entries and global ones; no scope sees only
        global entries. Lookup failures are logged and yield whatever was found.
        """
        if not source_text or not source_language or not target_language:
            return []

        scopes = [GLOBAL_SCOPE] if not project_scope else [project_scope, GLOBAL_SCOPE]
        placeholders = ",".join("?" for _ in scopes)
        matches: List[TMMatch] = []
        try:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM tm_entries "
                    f"WHERE source_language = ? AND target_language = ? AND source_text = ? "
                    f"AND project_scope IN ({placeholders})",
                    (source_language, target_language, source_text, *scopes),
                ).fetchall()
            exact = sorted((TMEntry.from_row(r) for r in rows), key=lambda e: e.project_scope is None)
            matches.extend(TMMatch(entry=e, score=100) for e in exact)
            for entry in exact:
                self._usage_executor.submit(self._bump_usage, entry.entry_id)

            use_fuzzy = self.fuzzy_enabled if fuzzy is None else fuzzy
            if use_fuzzy:
                matches.extend(self._fuzzy_matches(
                    source_text, source_language, target_language, scopes,
                    self.fuzzy_threshold if threshold is None else threshold,
                ))
        except sqlite3.Error as e:
            logger.error(f"TM lookup failed for {source_language}->{target_language}: {e}")

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    def _fuzzy_matches(self, source_text: str, source_language: str, target_language: str,
                       scopes: List[str], threshold: int) -> List[TMMatch]:
        placeholders = ",".join("?" for _ in scopes)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM tm_entries "
                f"WHERE source_language = ? AND target_language = ? AND source_text != ? "
                f"AND project_scope IN ({placeholders})",
                (source_language, target_language, source_text, *scopes),
            ).fetchall()

        entries = [TMEntry.from_row(row) for row in rows]
        hits = process.extract(
            source_text,
            {i: entry.source_text for i, entry in enumerate(entries)},
            scorer=Levenshtein.normalized_similarity,
            processor=normalize,
            score_cutoff=threshold / 100,
            limit=None,
        )
        # Only byte-identical sources count as exact
        return [TMMatch(entry=entries[i], score=min(99, int(round(score * 100)))) for _, score, i in hits]

    def _bump_usage(self, entry_id: int) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    "UPDATE tm_entries SET usage_count = usage_count + 1, last_used_at = ? WHERE id = ?",
                    (utcnow().isoformat(), entry_id),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            logger.warning(f"Failed to update usage for TM entry {entry_id}: {e}")

    def import_tmx(self, path: str, project_scope: Optional[str] = None,
                   created_by: Optional[str] = None) -> TMXImportResult:
        """Imports every <tu> with two language variants; malformed units are skipped."""
        parser = etree.XMLParser(resolve_entities=False, no_network=True)
        try:
            tree = etree.parse(path, parser)
        except (OSError, etree.XMLSyntaxError) as e:
            raise CodecError(path, str(e)) from e

        root = tree.getroot()
        header = root.find("header")
        src_lang = (header.get("srclang", "") if header is not None else "").lower()

        result = TMXImportResult()
        for index, tu in enumerate(root.iter("tu")):
            result.total_units += 1
            variants = []
            for tuv in tu.findall("tuv"):
                lang = tuv.get(XML_LANG) or tuv.get("lang")
                seg = tuv.find("seg")
                if lang and seg is not None:
                    variants.append((lang, "".join(seg.itertext())))

            if len(variants) < 2 or not all(text for _, text in variants[:2]):
                reason = f"Missing lang or seg at index {index}"
                logger.warning(f"Skipping TMX unit: {reason}")
                result.skipped_count += 1
                result.errors.append(reason)
                continue

            source = next((v for v in variants if v[0].lower() == src_lang), variants[0])
            target = next(v for v in variants if v is not source)
            try:
                added = self.add_entry(source[1], target[1], source[0], target[0], project_scope, created_by)
            except ValidationError as e:
                result.skipped_count += 1
                result.errors.append(f"Unit {index}: {e.message}")
                continue

            if added.status == "added":
                result.added_count += 1
            else:
                result.updated_count += 1

        logger.info(
            f"TMX import from {path}: {result.added_count} added, {result.updated_count} updated, "
            f"{result.skipped_count} skipped"
        )
        return result

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM tm_entries").fetchone()[0]

    def flush(self) -> None:
        """Blocks until pending usage updates are written."""
        self._usage_executor.submit(lambda: None).result()

    def close(self) -> None:
        self._usage_executor.shutdown(wait=True)
        with self._lock:
            self._conn.close()
