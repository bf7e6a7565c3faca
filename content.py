"""Built-in learning content loaded into the database at startup.

Content is authored here and upserted by id, so editing an entry and restarting
the service updates the stored copy without touching learner progress.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import db

logger = logging.getLogger("elearn.content")

_SEED_LOCK = threading.Lock()
_CONTENT_SEEDED = False


VOCABULARY_CHAPTERS: list[dict[str, Any]] = [
    {
        "id": "vocab-greetings",
        "title": "Greetings and Introductions",
        "level": "A1",
        "description": "Everyday words for meeting people.",
        "items": [
            ("hello", "A word used when meeting someone.", "Hello, my name is Ana.", "interjection"),
            ("introduce", "To tell someone another person's name when they first meet.", "Let me introduce my friend Tom.", "verb"),
            ("pleased", "Happy or satisfied.", "Pleased to meet you.", "adjective"),
            ("colleague", "A person you work with.", "She is my colleague from the sales team.", "noun"),
        ],
    },
    {
        "id": "vocab-travel",
        "title": "Travel Essentials",
        "level": "A2",
        "description": "Words you need at the airport and hotel.",
        "items": [
            ("boarding pass", "A card that lets you get on a plane.", "Please show your boarding pass at the gate.", "noun"),
            ("delay", "A period of waiting longer than expected.", "There is a two-hour delay.", "noun"),
            ("reservation", "An arrangement to keep a room or seat for you.", "I have a reservation under Smith.", "noun"),
            ("luggage", "The bags you carry when travelling.", "My luggage is too heavy.", "noun"),
            ("check in", "To report your arrival at a hotel or airport.", "We can check in after two o'clock.", "verb"),
        ],
    },
    {
        "id": "vocab-workplace",
        "title": "At the Workplace",
        "level": "B1",
        "description": "Vocabulary for meetings and office life.",
        "items": [
            ("deadline", "The latest time by which something must be done.", "The deadline for the report is Friday.", "noun"),
            ("agenda", "A list of topics to discuss at a meeting.", "The first item on the agenda is the budget.", "noun"),
            ("delegate", "To give part of your work to someone else.", "Managers should delegate routine tasks.", "verb"),
            ("feedback", "Comments about how well someone has done something.", "Thanks for the helpful feedback.", "noun"),
        ],
    },
]


# Translations of every vocabulary word, keyed by ISO 639-1 language code.
VOCABULARY_TRANSLATIONS: dict[str, dict[str, str]] = {
    "hello": {"es": "hola", "de": "hallo"},
    "introduce": {"es": "presentar", "de": "vorstellen"},
    "pleased": {"es": "encantado", "de": "erfreut"},
    "colleague": {"es": "colega", "de": "Kollege"},
    "boarding pass": {"es": "tarjeta de embarque", "de": "Bordkarte"},
    "delay": {"es": "retraso", "de": "Verspätung"},
    "reservation": {"es": "reserva", "de": "Reservierung"},
    "luggage": {"es": "equipaje", "de": "Gepäck"},
    "check in": {"es": "registrarse", "de": "einchecken"},
    "deadline": {"es": "fecha límite", "de": "Frist"},
    "agenda": {"es": "orden del día", "de": "Tagesordnung"},
    "delegate": {"es": "delegar", "de": "delegieren"},
    "feedback": {"es": "comentarios", "de": "Rückmeldung"},
}


READING_CHAPTERS: list[dict[str, Any]] = [
    {
        "id": "reading-morning-routine",
        "title": "A Morning Routine",
        "level": "A1",
        "description": "A short text about how Maria starts her day.",
        "body": (
            "Maria wakes up at six o'clock every morning. She drinks a glass of water and "
            "goes for a short walk in the park near her house. After the walk she takes a "
            "shower and eats breakfast with her brother. Maria usually eats bread with "
            "cheese and drinks tea. At half past seven she takes the bus to work. The bus "
            "ride is twenty minutes long, so she reads a book on the way."
        ),
        "questions": [
            {
                "id": "q-morning-1",
                "prompt": "What time does Maria wake up?",
                "options": ["At five o'clock", "At six o'clock", "At seven o'clock", "At half past seven"],
                "answer": "At six o'clock",
                "explanation": "The first sentence says she wakes up at six o'clock.",
            },
            {
                "id": "q-morning-2",
                "prompt": "Who does Maria eat breakfast with?",
                "options": ["Her sister", "Her mother", "Her brother", "Alone"],
                "answer": "Her brother",
                "explanation": "She eats breakfast with her brother after the shower.",
            },
            {
                "id": "q-morning-3",
                "prompt": "How does Maria go to work?",
                "options": ["By car", "By bike", "On foot", "By bus"],
                "answer": "By bus",
                "explanation": "At half past seven she takes the bus to work.",
            },
        ],
    },
    {
        "id": "reading-city-market",
        "title": "The City Market",
        "level": "A2",
        "description": "A visit to a busy Saturday market.",
        "body": (
            "Every Saturday the old square in the city centre becomes a busy market. "
            "Farmers arrive early in the morning with fresh vegetables, fruit and eggs. "
            "There is also a small stall that sells homemade bread, and the queue for it "
            "is always the longest. Tourists like the market because it is colourful and "
            "cheap, but many local families come too. The market closes at two o'clock, "
            "and by then most of the bread is gone."
        ),
        "questions": [
            {
                "id": "q-market-1",
                "prompt": "When does the market take place?",
                "options": ["Every day", "Every Saturday", "Every Sunday", "Once a month"],
                "answer": "Every Saturday",
                "explanation": "The text opens with 'Every Saturday'.",
            },
            {
                "id": "q-market-2",
                "prompt": "Which stall has the longest queue?",
                "options": ["The fruit stall", "The egg stall", "The bread stall", "The vegetable stall"],
                "answer": "The bread stall",
                "explanation": "The queue for the homemade bread is always the longest.",
            },
            {
                "id": "q-market-3",
                "prompt": "Why do tourists like the market?",
                "options": [
                    "It is open late",
                    "It is colourful and cheap",
                    "It sells souvenirs",
                    "It is quiet",
                ],
                "answer": "It is colourful and cheap",
                "explanation": "Tourists like it because it is colourful and cheap.",
            },
        ],
    },
    {
        "id": "reading-remote-work",
        "title": "Working From Home",
        "level": "B1",
        "description": "Advantages and challenges of remote work.",
        "body": (
            "In recent years, many companies have allowed employees to work from home for "
            "part of the week. Supporters say that remote work saves time because people "
            "no longer spend hours commuting, and that employees can organise their day "
            "more flexibly. However, some workers report that they feel isolated and find "
            "it harder to separate their job from their private life. Managers, meanwhile, "
            "worry about communication. Many teams now combine office days for meetings "
            "with home days for focused work, a model often called hybrid working."
        ),
        "questions": [
            {
                "id": "q-remote-1",
                "prompt": "According to supporters, what is one benefit of remote work?",
                "options": [
                    "Higher salaries",
                    "Less time spent commuting",
                    "More meetings",
                    "Bigger offices",
                ],
                "answer": "Less time spent commuting",
                "explanation": "Supporters say remote work saves time because people no longer commute.",
            },
            {
                "id": "q-remote-2",
                "prompt": "What problem do some workers report?",
                "options": [
                    "They feel isolated",
                    "They earn less",
                    "They travel more",
                    "They have no computer",
                ],
                "answer": "They feel isolated",
                "explanation": "Some workers report that they feel isolated.",
            },
            {
                "id": "q-remote-3",
                "prompt": "What is 'hybrid working'?",
                "options": [
                    "Working only at night",
                    "Working for two companies",
                    "Combining office days and home days",
                    "Working only from home",
                ],
                "answer": "Combining office days and home days",
                "explanation": "The last sentence defines hybrid working.",
            },
        ],
    },
]


INTERVIEW_QUESTION_BANK: dict[str, list[str]] = {
    "job": [
        "Tell me about yourself.",
        "Why do you want to work for our company?",
        "Describe a challenge you faced at work and how you solved it.",
        "Where do you see yourself in five years?",
    ],
    "academic": [
        "Why did you choose this programme?",
        "Tell me about a project you are proud of.",
        "How do you manage your time when you have several deadlines?",
        "What would you like to research in the future?",
    ],
    "visa": [
        "What is the purpose of your trip?",
        "How long do you plan to stay?",
        "Who will pay for your expenses?",
        "What ties do you have to your home country?",
    ],
    "general": [
        "What do you like to do in your free time?",
        "Describe your hometown.",
        "Tell me about a book or film you enjoyed recently.",
        "What is a skill you would like to learn and why?",
    ],
}


def interview_questions_for(interview_type: str) -> list[str]:
    return list(INTERVIEW_QUESTION_BANK.get(interview_type) or INTERVIEW_QUESTION_BANK["general"])


def ensure_seed_content() -> None:
    """Populate chapters, vocabulary and reading content exactly once per process."""

    global _CONTENT_SEEDED

    if _CONTENT_SEEDED:
        return

    with _SEED_LOCK:
        if _CONTENT_SEEDED:
            return

        db.init()

        for position, chapter in enumerate(VOCABULARY_CHAPTERS, start=1):
            db.upsert_chapter(chapter["id"], chapter["title"], chapter["level"], position, chapter.get("description"))
            for index, (word, definition, example, part_of_speech) in enumerate(chapter["items"], start=1):
                item_id = f"{chapter['id']}-{index}"
                db.upsert_vocabulary_item(
                    item_id,
                    chapter["id"],
                    word,
                    definition,
                    example=example,
                    part_of_speech=part_of_speech,
                    position=index,
                )
                for language, translation in VOCABULARY_TRANSLATIONS.get(word, {}).items():
                    db.upsert_vocabulary_translation(item_id, language, translation)

        for position, chapter in enumerate(READING_CHAPTERS, start=1):
            db.upsert_reading_chapter(chapter["id"], chapter["title"], chapter["level"], position, chapter.get("description"))
            db.upsert_reading_content(f"{chapter['id']}-content", chapter["id"], chapter["title"], chapter["body"])
            for index, question in enumerate(chapter["questions"], start=1):
                db.upsert_quiz_question(
                    question["id"],
                    chapter["id"],
                    question["prompt"],
                    question["options"],
                    question["answer"],
                    explanation=question.get("explanation"),
                    position=index,
                )

        logger.info(
            "Seeded %d vocabulary chapters and %d reading chapters",
            len(VOCABULARY_CHAPTERS),
            len(READING_CHAPTERS),
        )
        _CONTENT_SEEDED = True


def reset_seed_state() -> None:
    global _CONTENT_SEEDED
    with _SEED_LOCK:
        _CONTENT_SEEDED = False
