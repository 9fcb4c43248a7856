import json

import httpx
import pytest

from content_service import ContentGenerator, parse_quiz

QUIZ = [
    {'text': f'Question {i}', 'options': ['a', 'b', 'c', 'd'], 'correct_index': i % 4}
    for i in range(4)
]


def _generator(handler) -> ContentGenerator:
    return ContentGenerator('https://content.example.org', api_key='test-key',
                            transport=httpx.MockTransport(handler))


def _reply(content: str) -> httpx.Response:
    return httpx.Response(200, json={'choices': [{'message': {'content': content}}]})


def test_generate_lesson_posts_chat_completion():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['url'] = str(request.url)
        seen['auth'] = request.headers.get('Authorization')
        seen['body'] = json.loads(request.content)
        return _reply('  <h2>La Création</h2><p>Au commencement...</p>\n')

    html = _generator(handler).generate_lesson('La Création', 'Dieu est Créateur')

    assert html == '<h2>La Création</h2><p>Au commencement...</p>'
    assert seen['url'] == 'https://content.example.org/v1/chat/completions'
    assert seen['auth'] == 'Bearer test-key'
    assert 'La Création' in seen['body']['messages'][0]['content']


def test_generate_lesson_failure_returns_empty_string():
    generator = _generator(lambda request: httpx.Response(500, json={'error': 'boom'}))
    assert generator.generate_lesson('La Création', 'objectif') == ''


def test_disabled_service_generates_nothing():
    generator = ContentGenerator('')
    assert not generator.enabled
    assert generator.generate_lesson('x', 'y') == ''
    assert generator.generate_quiz('x', 'y') == []


def test_generate_quiz_accepts_wrapped_array():
    generator = _generator(lambda request: _reply(json.dumps({'questions': QUIZ})))
    questions = generator.generate_quiz('Les Animaux', '<p>Dieu a créé les animaux</p>')
    assert [q.correct_index for q in questions] == [0, 1, 2, 3]
    assert questions[0].options == ('a', 'b', 'c', 'd')


def test_generate_quiz_rejects_wrong_shape():
    generator = _generator(lambda request: _reply(json.dumps(QUIZ[:3])))
    assert generator.generate_quiz('Les Animaux', 'contenu') == []
    generator = _generator(lambda request: _reply('not json'))
    assert generator.generate_quiz('Les Animaux', 'contenu') == []


def test_parse_quiz_validates_questions():
    assert len(parse_quiz(json.dumps(QUIZ))) == 4
    broken = [dict(q, correct_index=7) for q in QUIZ]
    with pytest.raises(ValueError):
        parse_quiz(json.dumps(broken))
    missing = [{'text': 'q'} for _ in QUIZ]
    with pytest.raises(ValueError):
        parse_quiz(json.dumps(missing))
