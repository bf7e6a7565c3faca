import importlib
import os
import tempfile
import unittest


class ContentSeedTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self._prev_db_path = os.environ.get("DB_PATH")
        os.environ["DB_PATH"] = os.path.join(self._tmpdir.name, "seed.db")

        import content  # noqa: F401
        import db  # noqa: F401

        self.db = importlib.reload(db)
        self.content = importlib.reload(content)

    def tearDown(self):
        self.db._pool.close_all()
        if self._prev_db_path is None:
            os.environ.pop("DB_PATH", None)
        else:
            os.environ["DB_PATH"] = self._prev_db_path

        import content  # noqa: F401
        import db  # noqa: F401

        importlib.reload(db)
        importlib.reload(content)
        self._tmpdir.cleanup()

    def test_ensure_seed_content_populates_database(self):
        # Should not raise even though the database file does not exist yet.
        self.content.ensure_seed_content()

        chapters = self.db.list_chapters()
        self.assertEqual([c["id"] for c in chapters], ["vocab-greetings", "vocab-travel", "vocab-workplace"])
        self.assertTrue(all(c["word_count"] > 0 for c in chapters))

        reading = self.db.list_reading_chapters()
        self.assertEqual(len(reading), 3)
        self.assertTrue(all(r["question_count"] == 3 for r in reading))

        content = self.db.get_reading_content("reading-morning-routine")
        self.assertGreater(content["word_count"], 0)
        self.assertGreaterEqual(content["estimated_minutes"], 1)

        question = self.db.get_quiz_question("q-morning-1")
        self.assertIn(question["correct_answer"], question["options"])

        self.assertEqual(self.db.list_translation_languages(), ["de", "es"])
        self.assertEqual(self.db.find_vocabulary_translations("colleague", "es")[0]["translation"], "colega")

        # Calling it again should be a no-op.
        self.content.ensure_seed_content()
        self.assertEqual(len(self.db.list_reading_chapters()), 3)

    def test_reseeding_is_idempotent(self):
        self.content.ensure_seed_content()
        self.content.reset_seed_state()
        self.content.ensure_seed_content()

        self.assertEqual(len(self.db.list_vocabulary("vocab-greetings")), len(self.content.VOCABULARY_CHAPTERS[0]["items"]))
        self.assertEqual(len(self.db.list_quiz_questions("reading-city-market")), 3)

    def test_interview_question_bank(self):
        for interview_type in ("job", "academic", "visa", "general"):
            self.assertEqual(len(self.content.interview_questions_for(interview_type)), 4)
        self.assertEqual(self.content.interview_questions_for("unknown"), self.content.interview_questions_for("general"))
