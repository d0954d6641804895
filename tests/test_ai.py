from types import SimpleNamespace

import openai

from packages.core.ai import AIResponder, build_prompt, clean_text_for_whatsapp, format_history


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    """Клиент OpenAI: async context manager, как openai.AsyncOpenAI."""

    def __init__(self, completions):
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True


class StubbedResponder(AIResponder):
    def __init__(self, i18n, completions):
        super().__init__(i18n, model="gpt-test")
        self.completions = completions
        self.api_keys = []
        self.clients = []

    def _create_client(self, api_key):
        self.api_keys.append(api_key)
        client = FakeClient(self.completions)
        self.clients.append(client)
        return client


HISTORY = [
    {"sender": "contact", "text": "Do you ship to Rio?"},
    {"sender": "user", "text": "Yes, in 3 days."},
]


def test_format_history_labels_senders(i18n):
    assert format_history(HISTORY, i18n) == "Client: Do you ship to Rio?\nYou: Yes, in 3 days."


def test_build_prompt_sections(i18n):
    prompt = build_prompt(i18n, "You are a shop assistant.", "", HISTORY, "And to Recife?")

    assert prompt.startswith("You are a shop assistant.\n---\nKnowledge base (FAQ):\nNo FAQ information provided.")
    assert "Conversation history:\nClient: Do you ship to Rio?" in prompt
    assert prompt.endswith("New message from the client:\nAnd to Recife?\nYour answer:")


def test_clean_text_for_whatsapp():
    text = "## Prices\n**Bold** and <i>italic</i><br><del>old</del> &amp; <code>x=1</code>"

    assert clean_text_for_whatsapp(text) == "*Prices*\n*Bold* and _italic_\n~old~ & ```x=1```"


async def test_generate_reply_uses_user_key_and_single_message(i18n):
    completions = FakeCompletions(content="Sure, **tomorrow**.")
    responder = StubbedResponder(i18n, completions)

    reply = await responder.generate_reply("sk-user", "Prompt", "FAQ", HISTORY, "When?")

    assert reply == "Sure, *tomorrow*."
    assert responder.api_keys == ["sk-user"]
    request = completions.requests[0]
    assert request["model"] == "gpt-test"
    assert len(request["messages"]) == 1
    assert request["messages"][0]["role"] == "user"


async def test_generate_reply_falls_back_on_error(i18n):
    responder = StubbedResponder(i18n, FakeCompletions(error=RuntimeError("quota exceeded")))

    reply = await responder.generate_reply("sk-user", None, None, [], "hi")

    assert reply == "Sorry, I could not process your request right now."


async def test_client_is_closed_after_each_reply(i18n):
    responder = StubbedResponder(i18n, FakeCompletions(content="ok"))

    await responder.generate_reply("sk-user", None, None, [], "hi")
    await responder.generate_reply("sk-other", None, None, [], "hi again")

    assert [client.closed for client in responder.clients] == [True, True]


async def test_client_is_closed_when_request_fails(i18n):
    responder = StubbedResponder(i18n, FakeCompletions(error=RuntimeError("timeout")))

    await responder.generate_reply("sk-user", None, None, [], "hi")

    assert responder.clients[0].closed is True


async def test_real_client_is_async_context_manager(i18n):
    async with AIResponder(i18n)._create_client("sk-test") as client:
        assert isinstance(client, openai.AsyncOpenAI)
        assert client.api_key == "sk-test"
