"""Client for the course-content generation service.

The service speaks the OpenAI-compatible ``/v1/chat/completions`` protocol.
It is optional and may fail at any time: every failure is logged and turned
into an empty result (``""`` for a lesson, ``[]`` for a quiz), which callers
treat as "nothing generated".
"""

from __future__ import annotations

import json
from typing import Any, List, Optional

import httpx

from app_logging import get_logger
from entities import QuizQuestion

_logger = get_logger('clubsync.content')

QUIZ_LENGTH = 4

LESSON_PROMPT = """You are an instructor of a church youth club (Adventurers and Pathfinders).
Write an engaging, structured lesson for children.
Theme: {subject}.
Objective: {objective}.
Return only clean HTML using h2, p, ul and li. No <html> or <body> tags.
Tone: educational, biblical, interactive and encouraging."""

QUIZ_PROMPT = """You are an expert in playful teaching. Based on the following content of the
lesson "{subject}":
---
{content}
---
Write exactly {count} multiple-choice questions suited to ages 4-15, each with 4 options and a
single correct answer. Reply with a JSON array only, each item shaped as
{{"text": str, "options": [str, str, str, str], "correct_index": int}}."""


class ContentGenerator:
    def __init__(self, base_url: str, api_key: str = '', model: str = 'lesson-writer',
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _complete(self, prompt: str, json_mode: bool = False) -> str:
        body: dict = {
            'model': self.model,
            'messages': [{'role': 'user', 'content': prompt}],
        }
        if json_mode:
            body['response_format'] = {'type': 'json_object'}
        headers = {'Authorization': f'Bearer {self.api_key}'} if self.api_key else {}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            r = client.post(f'{self.base_url}/v1/chat/completions', json=body, headers=headers)
            r.raise_for_status()
            data = r.json()
        choices = data.get('choices') or []
        if not choices:
            return ''
        return (choices[0].get('message') or {}).get('content') or ''

    def generate_lesson(self, subject_name: str, objective: str) -> str:
        """HTML lesson body, or ``""`` when nothing could be generated."""
        if not self.enabled:
            _logger.warning('content service not configured')
            return ''
        try:
            return self._complete(LESSON_PROMPT.format(subject=subject_name,
                                                       objective=objective)).strip()
        except (httpx.HTTPError, ValueError) as exc:
            _logger.error('lesson generation failed', extra={'error': repr(exc)})
            return ''

    def generate_quiz(self, subject_name: str, content: str) -> List[QuizQuestion]:
        """Exactly four validated questions, or ``[]``."""
        if not self.enabled:
            _logger.warning('content service not configured')
            return []
        try:
            raw = self._complete(QUIZ_PROMPT.format(subject=subject_name, content=content,
                                                    count=QUIZ_LENGTH), json_mode=True)
            return parse_quiz(raw)
        except (httpx.HTTPError, ValueError) as exc:
            _logger.error('quiz generation failed', extra={'error': repr(exc)})
            return []


def parse_quiz(raw: str) -> List[QuizQuestion]:
    """Decode a model reply into questions; raises ``ValueError`` on bad shape."""
    data: Any = json.loads(raw.strip())
    if isinstance(data, dict):
        # json_object mode wraps arrays: {"questions": [...]}
        data = next((v for v in data.values() if isinstance(v, list)), None)
    if not isinstance(data, list) or len(data) != QUIZ_LENGTH:
        raise ValueError(f'expected a list of {QUIZ_LENGTH} questions')
    try:
        return [QuizQuestion.from_dict(item) for item in data]
    except (KeyError, TypeError) as exc:
        raise ValueError(f'malformed question: {exc!r}') from exc
