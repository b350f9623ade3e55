from __future__ import annotations

from ragcontext.config import get_settings
from ragcontext.models import ChatTurn
from ragcontext.services.generation import (
    GenerationConfig,
    QwenCompleter,
    TemplateCompleter,
    render_transcript,
)


def _turns() -> list[ChatTurn]:
    return [
        ChatTurn(id="1", session_id="s", user_id="u", role="user", text="Which  scholarships fit me?"),
        ChatTurn(id="2", session_id="s", user_id="u", role="assistant", text="Try the STEM award."),
        ChatTurn(id="3", session_id="s", user_id="u", role="assistant", text="Also the regional grant."),
    ]


def test_template_completer_is_extractive():
    summary = TemplateCompleter().summarize(_turns())
    assert summary == (
        "Conversation of 3 messages. The user opened with: Which scholarships fit me? "
        "Latest reply: Also the regional grant."
    )
    assert TemplateCompleter().summarize([]) == ""


def test_qwen_completer_uses_template_when_model_disabled():
    completer = QwenCompleter(GenerationConfig(use_model=False))
    assert not completer.uses_model
    assert completer.summarize(_turns()) == TemplateCompleter().summarize(_turns())


def test_render_transcript_keeps_order():
    assert render_transcript(_turns()[:2]) == "user: Which  scholarships fit me?\nassistant: Try the STEM award."


def test_generation_config_from_settings():
    settings = get_settings({"environment": "test", "generator_max_new_tokens": 64, "use_model_generator": False})
    config = GenerationConfig.from_settings(settings)
    assert config.max_new_tokens == 64
    assert config.use_model is False
