# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import threading
from typing import FrozenSet, Iterable, Optional

from coreason_free_fleet.utils.logger import logger

# Fully-qualified ids known to be free regardless of what adapters report.
DEFAULT_CONFIRMED_FREE_MODELS: FrozenSet[str] = frozenset(
    {
        # OpenRouter (verified free via pricing)
        "openrouter/qwen/qwen3-coder:free",
        "openrouter/deepseek/deepseek-v3.2",
        "openrouter/deepseek/deepseek-r1-0528:free",
        "openrouter/z-ai/glm-4.5-air:free",
        "openrouter/arcee-ai/trinity-large-preview:free",
        "openrouter/mistralai/mistral-small-3.1-24b-instruct:free",
        "openrouter/mistralai/mistral-tiny:free",
        "openrouter/nvidia/nemotron-3-nano-30b-a3b:free",
        "openrouter/nvidia/nemotron-3-nano-12b-v2-vl:free",
        "openrouter/nvidia/nemotron-3-nano-9b-v2:free",
        "openrouter/google/gemma-3n-e2b-it:free",
        "openrouter/google/gemma-3n-e4b-it:free",
        # DeepSeek (official documentation)
        "deepseek/deepseek-chat",
        "deepseek/deepseek-v3",
        "deepseek/deepseek-r1",
        # Groq
        "groq/llama-3.1-8b-instruct",
        "groq/llama-3.1-70b-versatile-instruct",
        "groq/mixtral-8x7b-instruct",
        # Hugging Face (serverless free tier)
        "huggingface/Qwen/Qwen2.5-72B-Instruct-Turbo",
        # Google (limited free tier)
        "google/gemini-1.5-flash",
        "google/gemini-1.5-flash-8b",
    }
)


class ConfirmedFreeStore:
    """
    Mutable allow-list of confirmed-free model ids, owned by one Oracle.
    """

    def __init__(self, initial: Optional[Iterable[str]] = None) -> None:
        self._lock = threading.Lock()
        self._models = set(DEFAULT_CONFIRMED_FREE_MODELS if initial is None else initial)

    def __contains__(self, model_id: object) -> bool:
        return self.contains(model_id) if isinstance(model_id, str) else False

    def __len__(self) -> int:
        return len(self._models)

    def contains(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._models

    def add(self, model_id: str) -> None:
        with self._lock:
            self._models.add(model_id)
        logger.debug(f"Confirmed-free list: added {model_id}")

    def remove(self, model_id: str) -> None:
        with self._lock:
            self._models.discard(model_id)
        logger.debug(f"Confirmed-free list: removed {model_id}")

    def merge(self, model_ids: Iterable[str]) -> int:
        """
        Adds every id not already present. Never removes entries.
        Returns the number of new ids.
        """
        with self._lock:
            before = len(self._models)
            self._models.update(model_ids)
            return len(self._models) - before

    def snapshot(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._models)
