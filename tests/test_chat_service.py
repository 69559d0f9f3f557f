import asyncio

from chronicle_keeper.attachments import AttachmentLimits
from chronicle_keeper.chat_service import (
    FALLBACK_TEXT,
    MALFORMED_ATTACHMENTS_TEXT,
    MISSING_INPUT_TEXT,
    NOT_CONFIGURED_TEXT,
    ChatService,
    normalize_history,
    too_large_text,
)
from chronicle_keeper.config_service import LLMSettings
from chronicle_keeper.context_pack import CHARACTER_HEADER, ContextPackBuilder
from chronicle_keeper.llm.base import LLMClient, LLMHTTPError
from chronicle_keeper.llm.openai_compat_client import OpenAICompatClient
from chronicle_keeper.prompt_assembler import ATTACHMENT_PLACEHOLDER, CONTEXT_PACK_HEADER, PromptAssembler
from chronicle_keeper.world_store import WorldStore, WorldStoreError

MIB = 1024 * 1024
SETTINGS = LLMSettings(base_url='https://llm.example/v1', api_key='k', model='m1')


class RecordingLLM(LLMClient):
    def __init__(self, reply='The void remembers.', error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def generate_chat(self, messages, **kwargs):
        self.calls.append({'messages': messages, **kwargs})
        if self.error is not None:
            raise self.error
        return {'text': self.reply, 'usage': {'output_tokens': 3}}


class DummyStore(WorldStore):
    def __init__(self, characters=(), fail=False):
        self.characters = list(characters)
        self.fail = fail

    async def list_candidates(self, entity_type):
        if self.fail:
            raise WorldStoreError('store unreachable')
        return self.characters if entity_type == 'characters' else []

    async def fetch_details(self, entity_type, ids):
        return [c for c in self.characters if c['id'] in ids]

    async def fetch_joins(self, table, filter_column, ids):
        return []

    async def fetch_stories(self, ids, limit):
        return []


MEL = {'id': 'c1', 'name': 'Mel, The Void Walker', 'aliases': [], 'title': 'Walker', 'faction': '', 'description': 'Walks the void.', 'lore': '', 'bio': ''}


def make_service(llm=None, store=None, settings=SETTINGS):
    return ChatService(
        llm=llm if llm is not None else RecordingLLM(),
        llm_settings=settings,
        context_builder=ContextPackBuilder(store),
        assembler=PromptAssembler(),
        attachment_limits=AttachmentLimits(),
    )


def handle(service, payload):
    return asyncio.run(service.handle(payload))


def test_scenario_context_pack_reaches_system_prompt():
    llm = RecordingLLM()
    out = handle(make_service(llm, DummyStore([MEL])), {'message': 'Tell me about Mel'})
    assert out.status_code == 200 and out.text == 'The void remembers.'
    system = llm.calls[0]['messages'][0]['content']
    assert CONTEXT_PACK_HEADER in system
    assert CHARACTER_HEADER in system
    assert 'Mel, The Void Walker' in system


def test_scenario_oversized_image_rejected_without_provider_call():
    llm = RecordingLLM()
    png = {'kind': 'image', 'filename': 'big.png', 'contentType': 'image/png', 'base64': 'A' * (4 * MIB)}
    out = handle(make_service(llm), {'message': 'look', 'attachments': [png]})
    assert out.status_code == 400
    assert out.text == too_large_text(AttachmentLimits())
    assert llm.calls == []


def test_scenario_text_attachment_with_empty_message():
    llm = RecordingLLM()
    att = {'kind': 'text', 'contentType': 'text/plain', 'text': 'hello'}
    out = handle(make_service(llm), {'message': '', 'attachments': [att]})
    assert out.status_code == 200
    user = llm.calls[0]['messages'][-1]
    assert user['content'] == ATTACHMENT_PLACEHOLDER + '\n\n【附件：附件1】\nhello'


def test_blank_message_with_image_uses_placeholder():
    llm = RecordingLLM()
    img = {'kind': 'image', 'filename': 'a.png', 'contentType': 'image/png', 'base64': 'data:image/png;base64,aGVsbG8='}
    handle(make_service(llm), {'message': '  ', 'attachments': [img]})
    parts = llm.calls[0]['messages'][-1]['content']
    assert parts[0] == {'type': 'text', 'text': ATTACHMENT_PLACEHOLDER}
    assert parts[1]['image_url']['url'] == 'data:image/png;base64,aGVsbG8='


def test_provider_failure_returns_fallback_with_200():
    llm = RecordingLLM(error=LLMHTTPError(502, 'bad gateway'))
    out = handle(make_service(llm), {'message': 'hi'})
    assert out.status_code == 200
    assert out.text == FALLBACK_TEXT
    assert out.degraded


def test_malformed_provider_url_returns_fallback():
    llm = OpenAICompatClient(base_url='http://exa mple.com:abc', api_key='k')
    out = handle(make_service(llm), {'message': 'hi'})
    assert out.status_code == 200
    assert out.text == FALLBACK_TEXT
    assert out.degraded


def test_unexpected_provider_exception_returns_fallback():
    out = handle(make_service(RecordingLLM(error=RuntimeError('boom'))), {'message': 'hi'})
    assert out.status_code == 200
    assert out.text == FALLBACK_TEXT


def test_empty_provider_text_returns_fallback():
    out = handle(make_service(RecordingLLM(reply='')), {'message': 'hi'})
    assert out.text == FALLBACK_TEXT


def test_store_failure_degrades_to_no_context():
    llm = RecordingLLM()
    out = handle(make_service(llm, DummyStore([MEL], fail=True)), {'message': 'Tell me about Mel'})
    assert out.status_code == 200
    assert CONTEXT_PACK_HEADER not in llm.calls[0]['messages'][0]['content']


def test_warnings_are_appended_to_reply():
    gif = {'kind': 'image', 'filename': 'cat.gif', 'contentType': 'image/gif', 'base64': 'R0lGOD=='}
    out = handle(make_service(), {'message': 'hi', 'attachments': [gif]})
    assert out.text.startswith('The void remembers.')
    assert 'cat.gif' in out.text
    assert '附件提示' in out.text


def test_missing_message_and_attachments_is_400():
    llm = RecordingLLM()
    out = handle(make_service(llm), {'message': '   '})
    assert (out.status_code, out.text) == (400, MISSING_INPUT_TEXT)
    assert llm.calls == []


def test_all_attachments_dropped_and_blank_message_is_400():
    gif = {'kind': 'image', 'filename': 'cat.gif', 'contentType': 'image/gif', 'base64': 'R0lGOD=='}
    out = handle(make_service(), {'message': '', 'attachments': [gif]})
    assert out.status_code == 400
    assert out.text.startswith(MISSING_INPUT_TEXT)


def test_malformed_attachments_is_400():
    out = handle(make_service(), {'message': 'hi', 'attachments': 'not-a-list'})
    assert (out.status_code, out.text) == (400, MALFORMED_ATTACHMENTS_TEXT)


def test_unconfigured_provider_is_500():
    settings = LLMSettings(base_url=None, api_key='k', model='m')
    llm = RecordingLLM()
    out = handle(make_service(llm, settings=settings), {'message': 'hi'})
    assert (out.status_code, out.text) == (500, NOT_CONFIGURED_TEXT)
    assert llm.calls == []


def test_fixed_sampling_parameters_are_sent():
    llm = RecordingLLM()
    handle(make_service(llm), {'message': 'hi'})
    call = llm.calls[0]
    assert call['model'] == 'm1'
    assert call['temperature'] == 0.7
    assert call['max_tokens'] == 180


def test_history_forwarded_and_capped():
    llm = RecordingLLM()
    history = [{'role': 'assistant' if i % 2 else 'user', 'content': f't{i}'} for i in range(10)]
    handle(make_service(llm), {'message': 'now', 'history': history})
    msgs = llm.calls[0]['messages']
    assert [m['content'] for m in msgs[1:-1]] == ['t4', 't5', 't6', 't7', 't8', 't9']


def test_normalize_history_coerces_roles_and_drops_junk():
    raw = [{'role': 'system', 'content': 'x'}, {'role': 'assistant', 'content': ''}, 'junk', {'role': 'assistant', 'content': 5}]
    assert normalize_history(raw) == [{'role': 'user', 'content': 'x'}, {'role': 'assistant', 'content': '5'}]
    assert normalize_history('nope') == []
