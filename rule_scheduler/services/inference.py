# rule_scheduler/services/inference.py
"""
Optional LLM refinement of prediction candidates.

An inference backend receives the candidates that survived the heuristic
pass for one time slot and may re-score their confidence. It can never add
or drop candidates, and any failure (disabled provider, timeout, bad
response) hands the candidates back unchanged.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.models.schemas import BackendName, PredictiveSchedule

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You calibrate predictions of background media tasks. Given candidate tasks "
    "for one time slot, reply with JSON only: "
    '{"adjustments": [{"index": <int>, "confidence": <float 0-1>}]}'
)
_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


class InferenceBackend:
    """Backend contract: ``enhance(candidates, context) -> candidates``"""

    name = "none"

    def is_available(self, backend: str = BackendName.AUTO.value) -> bool:
        return False

    async def enhance(self, candidates: List[PredictiveSchedule], context: Dict[str, Any],
                      backend: str = BackendName.AUTO.value) -> List[PredictiveSchedule]:
        return candidates

    async def close(self):
        pass


class NullInferenceBackend(InferenceBackend):
    """Pass-through backend used when no provider is enabled"""


class LLMInferenceBackend(InferenceBackend):
    """Re-scores candidates through Ollama and/or an OpenAI-compatible API"""

    name = "llm"

    def __init__(self, settings: Optional[Settings] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.inference_timeout_seconds)
        return self._client

    def _providers(self, backend: str) -> List[str]:
        enabled = {
            "ollama": self.settings.ollama_enabled,
            "openai": self.settings.openai_enabled and bool(self.settings.openai_api_key),
        }
        if backend in enabled:
            return [backend] if enabled[backend] else []

        order = ["openai", "ollama"] if self.settings.llm_fallback_strategy == "openai_first" else ["ollama", "openai"]
        return [provider for provider in order if enabled[provider]]

    def is_available(self, backend: str = BackendName.AUTO.value) -> bool:
        return bool(self._providers(backend))

    async def enhance(self, candidates: List[PredictiveSchedule], context: Dict[str, Any],
                      backend: str = BackendName.AUTO.value) -> List[PredictiveSchedule]:
        providers = self._providers(backend)
        if not candidates or not providers:
            return candidates

        prompt = self._build_prompt(candidates, context)
        try:
            content = await asyncio.wait_for(
                self._complete(providers, prompt),
                timeout=self.settings.inference_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Inference timed out after {self.settings.inference_timeout_seconds}s; using heuristic predictions")
            return candidates
        except Exception as e:
            logger.warning(f"Inference backend unavailable, using heuristic predictions: {e}")
            return candidates

        return self._apply_adjustments(candidates, content)

    async def _complete(self, providers: List[str], prompt: str) -> str:
        if self.settings.llm_fallback_strategy == "parallel" and len(providers) > 1:
            results = await asyncio.gather(
                *(self._call(provider, prompt) for provider in providers),
                return_exceptions=True
            )
            for result in results:
                if isinstance(result, str):
                    return result
            raise RuntimeError(f"All inference providers failed: {results}")

        last_error: Optional[Exception] = None
        for provider in providers:
            try:
                return await self._call(provider, prompt)
            except (httpx.HTTPError, KeyError, ValueError) as e:
                logger.info(f"Inference provider {provider} failed: {e}")
                last_error = e
        raise RuntimeError(f"All inference providers failed: {last_error}")

    async def _call(self, provider: str, prompt: str) -> str:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        if provider == "ollama":
            response = await self.client.post(
                f"{self.settings.ollama_base_url.rstrip('/')}/api/chat",
                json={"model": self.settings.ollama_model, "messages": messages, "stream": False},
            )
            response.raise_for_status()
            return response.json()["message"]["content"]

        response = await self.client.post(
            f"{self.settings.openai_base_url.rstrip('/')}/chat/completions",
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
            json={"model": self.settings.openai_model, "messages": messages, "temperature": 0},
        )
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"]

    @staticmethod
    def _build_prompt(candidates: List[PredictiveSchedule], context: Dict[str, Any]) -> str:
        lines = [f"Slot context: {json.dumps(context, default=str)}", "Candidates:"]
        for index, candidate in enumerate(candidates):
            lines.append(
                f"{index}. task={candidate.predicted_task_type} "
                f"time={candidate.predicted_execution_time.isoformat()} "
                f"source={candidate.source.value} confidence={candidate.confidence_score:.2f}"
            )
        return "\n".join(lines)

    @staticmethod
    def _apply_adjustments(candidates: List[PredictiveSchedule], content: str) -> List[PredictiveSchedule]:
        match = _JSON_BLOCK.search(content or "")
        if not match:
            logger.warning("Inference response contained no JSON; keeping heuristic confidences")
            return candidates

        try:
            adjustments = json.loads(match.group(0)).get("adjustments", [])
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning(f"Could not parse inference response: {e}")
            return candidates

        enhanced = list(candidates)
        for item in adjustments:
            try:
                index = int(item["index"])
                confidence = min(1.0, max(0.0, float(item["confidence"])))
            except (KeyError, TypeError, ValueError):
                continue
            if 0 <= index < len(enhanced):
                enhanced[index] = enhanced[index].model_copy(update={"confidence_score": confidence})
        return enhanced

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_inference_backend(settings: Optional[Settings] = None) -> InferenceBackend:
    settings = settings or get_settings()
    if settings.llm_enabled:
        return LLMInferenceBackend(settings)
    return NullInferenceBackend()
