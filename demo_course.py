"""Built-in demo course served for the topic ``"test"`` without calling the model."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from schemas import Course

DEMO_TOPIC = "test"

_DEMO_COURSE: Dict[str, Any] = {
    "course_id": "demo-123",
    "title": "Nursing Informatics 101",
    "style": "Professional",
    "chapters": [
        {
            "id": 1,
            "title": "The Data-Information-Knowledge-Wisdom (DIKW) Framework",
            "summary": "Understanding the core hierarchy of nursing informatics.",
            "content_markdown": (
                "The **DIKW hierarchy** describes how raw observations become "
                "actionable clinical judgement..."
            ),
            "audio_script": "Imagine you have a patient's vitals. That's data...",
            "quiz": [
                {
                    "question": "Which level of the DIKW hierarchy involves applying knowledge to solve problems?",
                    "options": ["Data", "Information", "Knowledge", "Wisdom"],
                    "correct_answer": 3,
                },
                {
                    "question": "A blood pressure reading of 120/80 without context is considered:",
                    "options": ["Wisdom", "Data", "Information", "Knowledge"],
                    "correct_answer": 1,
                },
                {
                    "question": "Which term refers to synthesized information identifying patterns?",
                    "options": ["Data", "Information", "Knowledge", "Wisdom"],
                    "correct_answer": 2,
                },
                {
                    "question": "In the DIKW framework, 'Wisdom' is best described as:",
                    "options": [
                        "Raw facts",
                        "Knowing why and how to apply data",
                        "Organized data",
                        "Computer processing",
                    ],
                    "correct_answer": 1,
                },
                {
                    "question": "Electronic Health Records (EHRs) primarily store which levels of DIKW?",
                    "options": ["Data and Information", "Wisdom only", "Knowledge only", "None of the above"],
                    "correct_answer": 0,
                },
            ],
            "flashcards": [],
        },
        {
            "id": 2,
            "title": "Standardized Terminologies",
            "summary": "Why we need a common language in healthcare.",
            "content_markdown": (
                "Standardized terminologies such as SNOMED CT and LOINC let data "
                "move between systems without losing meaning..."
            ),
            "audio_script": "If I say 'high BP' and you say 'hypertension', a computer might get confused...",
            "quiz": [
                {
                    "question": "Which terminology is primarily used for laboratory observations?",
                    "options": ["LOINC", "ICD-10", "CPT", "NANDA"],
                    "correct_answer": 0,
                },
                {
                    "question": "What is the main benefit of a standardized terminology?",
                    "options": [
                        "Faster typing",
                        "Shared meaning across systems",
                        "Smaller databases",
                        "Fewer nurses needed",
                    ],
                    "correct_answer": 1,
                },
                {
                    "question": "SNOMED CT is best described as:",
                    "options": [
                        "A billing code set",
                        "A clinical reference terminology",
                        "A drug formulary",
                        "A messaging protocol",
                    ],
                    "correct_answer": 1,
                },
                {
                    "question": "'High BP' and 'hypertension' mapping to one concept is an example of:",
                    "options": ["Interoperability", "Encryption", "Redundancy", "Data loss"],
                    "correct_answer": 0,
                },
                {
                    "question": "Which standard focuses on nursing diagnoses?",
                    "options": ["LOINC", "NANDA-I", "DICOM", "HL7 v2"],
                    "correct_answer": 1,
                },
            ],
            "flashcards": [],
        },
    ],
}


def is_demo_topic(topic: Optional[str]) -> bool:
    return (topic or "").strip().lower() == DEMO_TOPIC


def build_demo_course(now: Optional[datetime] = None) -> Course:
    """Fresh copy of the demo course with a unique id and creation time."""

    moment = now or datetime.now(timezone.utc)
    payload = copy.deepcopy(_DEMO_COURSE)
    payload["course_id"] = f"demo-{int(moment.timestamp() * 1000)}"
    payload["created_at"] = moment.isoformat()
    return Course.model_validate(payload)
