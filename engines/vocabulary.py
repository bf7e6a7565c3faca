"""Translation lookup for the seeded vocabulary."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import db
from errors import NotFound, ValidationFailed

_LOGGER = logging.getLogger("elearn.vocabulary")


def _normalize_word(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


class TranslationService:
    def __init__(self, store: Any = db):
        self.store = store

    def languages(self) -> list[str]:
        return self.store.list_translation_languages()

    def _check_language(self, language: Optional[str]) -> Optional[str]:
        if language is None:
            return None
        code = language.strip().lower()
        if code not in self.languages():
            raise ValidationFailed(f"unsupported language '{language}'")
        return code

    def lookup(self, word: str, language: Optional[str] = None) -> Dict[str, Any]:
        """Translations of one vocabulary word, optionally limited to ``language``."""
        normalized = _normalize_word(word)
        if not normalized:
            raise ValidationFailed("word is required")
        code = self._check_language(language)
        rows = self.store.find_vocabulary_translations(normalized, code)
        if not rows:
            _LOGGER.debug("No translation for %r (%s)", normalized, code or "any")
            raise NotFound(f"no translation for '{normalized}'")
        first = rows[0]
        return {
            "word": first["word"],
            "definition": first["definition"],
            "part_of_speech": first["part_of_speech"],
            "chapter_id": first["chapter_id"],
            "translations": {
                row["language"]: row["translation"] for row in rows if row["item_id"] == first["item_id"]
            },
        }

    def chapter_translations(self, chapter_id: str, language: str) -> Dict[str, Any]:
        code = self._check_language(language)
        if self.store.get_chapter(chapter_id) is None:
            raise NotFound("chapter not found")
        return {
            "chapter_id": chapter_id,
            "language": code,
            "items": self.store.list_chapter_translations(chapter_id, code),
        }
