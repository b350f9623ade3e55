"""Completion backends used for session summaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from ragcontext.config import Settings
from ragcontext.models import ChatTurn

LOGGER = logging.getLogger(__name__)

SUMMARY_INSTRUCTION = (
    "Summarize this conversation in 2-3 sentences. "
    "Focus on the main topics discussed and any outcomes or recommendations provided."
)


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for summary generation."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 256
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "GenerationConfig":
        return cls(
            model=settings.generator_model,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            use_model=settings.use_model_generator,
        )


class Completer(Protocol):
    """Protocol describing summary generation behaviour."""

    def summarize(self, turns: Sequence[ChatTurn]) -> str:
        """Return a short summary of the given chronologically ordered turns."""


def render_transcript(turns: Sequence[ChatTurn]) -> str:
    return "\n".join(f"{turn.role}: {turn.text}" for turn in turns)


def _shorten(text: str, limit: int = 160) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


class TemplateCompleter:
    """Deterministic extractive summarizer used for tests and offline environments."""

    def summarize(self, turns: Sequence[ChatTurn]) -> str:
        if not turns:
            return ""
        user_turns = [turn for turn in turns if turn.role == "user"]
        reply_turns = [turn for turn in turns if turn.role == "assistant"]
        parts = [f"Conversation of {len(turns)} messages."]
        if user_turns:
            parts.append(f"The user opened with: {_shorten(user_turns[0].text)}")
        if reply_turns:
            parts.append(f"Latest reply: {_shorten(reply_turns[-1].text)}")
        return " ".join(parts)


class QwenCompleter:
    """Completer that optionally calls into Qwen models via Transformers."""

    def __init__(self, config: GenerationConfig | None = None, fallback: Completer | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateCompleter()
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            LOGGER.info("QwenCompleter running in template-only mode.")
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
            self._model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if self._config.device:
                self._model.to(self._config.device)
            LOGGER.info("Loaded summary model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - depends on optional packages
            LOGGER.warning("Falling back to template completer: %s", exc)
            self._tokenizer = None
            self._model = None

    @property
    def uses_model(self) -> bool:
        return self._model is not None

    def summarize(self, turns: Sequence[ChatTurn]) -> str:
        if self._tokenizer is None or self._model is None:
            return self._fallback.summarize(turns)
        transcript = render_transcript(turns)
        messages = [
            {"role": "system", "content": SUMMARY_INSTRUCTION},
            {"role": "user", "content": transcript},
        ]
        if hasattr(self._tokenizer, "apply_chat_template"):
            prompt = self._tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
        else:
            prompt = f"{SUMMARY_INSTRUCTION}\n\n{transcript}\n\nSummary:"
        import torch

        tokenized = self._tokenizer(prompt, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        prompt_length = input_ids.shape[1]
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        with torch.no_grad():
            output = self._model.generate(
                input_ids,
                attention_mask=attention_mask,
                max_new_tokens=self._config.max_new_tokens,
                temperature=self._config.temperature,
            )
        return self._tokenizer.decode(output[0][prompt_length:], skip_special_tokens=True).strip()
