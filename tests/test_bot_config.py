import pytest

from packages.core.memory import ExpiringCache
from packages.core.services import BotConfigService
from packages.core.services.bot_config import wire_to_values

from conftest import USER_ID


@pytest.fixture
def config_cache():
    return ExpiringCache(ttl=300.0, name="config")


@pytest.fixture
def bot_configs(session_factory, config_cache, tmp_path):
    return BotConfigService(session_factory, config_cache, tmp_path / "user_data")


async def test_missing_config_returns_none(bot_configs):
    assert await bot_configs.get_bot_config(USER_ID) is None


async def test_save_and_read_wire_format(bot_configs):
    await bot_configs.save_bot_config(USER_ID, {
        "useCustomResponses": True,
        "customResponses": {"oi": [{"text": "Olá!", "delay": 100}]},
        "pauseBotKeyword": "atendente",
    })

    config = await bot_configs.get_bot_config(USER_ID)

    assert config == {
        "useAI": False,
        "aiApiKey": None,
        "systemPrompt": None,
        "useCustomResponses": True,
        "customResponses": {"oi": [{"text": "Olá!", "delay": 100}]},
        "pauseBotKeyword": "atendente",
    }


async def test_save_merges_with_existing_fields(bot_configs):
    await bot_configs.save_bot_config(USER_ID, {"useAI": True, "aiApiKey": "sk-test"})
    await bot_configs.save_bot_config(USER_ID, {"pauseBotKeyword": "humano"})

    config = await bot_configs.get_bot_config(USER_ID)
    assert config["useAI"] is True
    assert config["aiApiKey"] == "sk-test"
    assert config["pauseBotKeyword"] == "humano"


async def test_saving_same_data_twice_is_idempotent(bot_configs):
    data = {"useAI": True, "aiApiKey": "sk-test", "systemPrompt": "Be brief."}

    first = await bot_configs.save_bot_config(USER_ID, data)
    second = await bot_configs.save_bot_config(USER_ID, data)

    assert first == second


async def test_save_invalidates_cached_config(bot_configs, config_cache):
    await bot_configs.save_bot_config(USER_ID, {"pauseBotKeyword": "one"})
    await bot_configs.get_bot_config(USER_ID)
    assert USER_ID in config_cache

    await bot_configs.save_bot_config(USER_ID, {"pauseBotKeyword": "two"})
    assert USER_ID not in config_cache
    assert (await bot_configs.get_bot_config(USER_ID))["pauseBotKeyword"] == "two"


async def test_faq_text_is_attached_only_in_ai_mode(bot_configs):
    """FAQ хранится файлом и подмешивается только при включенном AI."""
    await bot_configs.save_bot_config(USER_ID, {"useAI": False, "faqText": "Opening hours: 9-18"})

    assert bot_configs.has_faq(USER_ID)
    assert "faqText" not in await bot_configs.get_bot_config(USER_ID)

    await bot_configs.save_bot_config(USER_ID, {"useAI": True})
    config = await bot_configs.get_bot_config(USER_ID)
    assert config["faqText"] == "Opening hours: 9-18"


async def test_ai_mode_without_faq_file_gives_empty_text(bot_configs):
    await bot_configs.save_bot_config(USER_ID, {"useAI": True})

    config = await bot_configs.get_bot_config(USER_ID)
    assert config["faqText"] == ""


def test_wire_to_values_drops_unknown_keys():
    values = wire_to_values({
        "useAI": 1,
        "faqText": "ignored",
        "faqFilename": "faq.txt",
        "somethingElse": True,
    })
    assert values == {"use_ai": True}
