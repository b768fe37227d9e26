"""
Vision classifier client for OpenAI-compatible chat-completion endpoints.

Sends the front (and optional back) image of a secret with the system
prompt, retries transient failures, and returns the model's JSON already
passed through the schema guard. Failures here are loud: callers get a
ClassifierError rather than a defaulted payload.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests
from PIL import Image

from ..utils.config import HttpConfig, ModerationConfig, OpenAIConfig
from ..utils.retry import RetryPolicy, is_retriable_status, parse_retry_after
from .image_refs import to_image_url
from .prompts import load_prompt, prompt_version
from .schema_guard import normalize
from .schemas import ClassificationPayload

logger = logging.getLogger(__name__)

ERROR_BODY_LIMIT = 500


class ClassifierError(RuntimeError):
    """Vision model call failed (transport, HTTP status or unusable content)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class VisionClassifier:
    """
    Classify secrets with a vision-language model.

    Key features:
    - SIDE markers precede each image part
    - JSON response format, normalized before returning
    - Bounded retries on transport errors, 429 and 5xx
    - Optional moderation sub-call recorded as an annotation
    """

    def __init__(
        self,
        config: OpenAIConfig,
        http: Optional[HttpConfig] = None,
        moderation: Optional[ModerationConfig] = None,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.http = http or HttpConfig()
        self.moderation = moderation or ModerationConfig()
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy(
            max_retries=self.http.max_retries,
            backoff_factor=self.http.backoff_factor,
            max_delay=self.http.max_delay,
        )
        self._prompt_text = load_prompt(config.prompt_path)

        logger.info(f"VisionClassifier initialized (model: {config.model}, base: {config.api_base})")

    @property
    def prompt_text(self) -> str:
        return self._prompt_text

    @property
    def prompt_version(self) -> str:
        return prompt_version(self._prompt_text)

    # ── public API ──────────────────────────────────────

    def classify(
        self,
        front_image: str,
        back_image: Optional[str] = None,
        prompt_text: Optional[str] = None,
        model_config: Optional[OpenAIConfig] = None,
    ) -> ClassificationPayload:
        """
        Classify one secret.

        Args:
            front_image: URL, data URL or local path of the front side
            back_image: Optional back side reference
            prompt_text: Override for the system prompt
            model_config: Override for model/sampling settings

        Returns:
            Normalized ClassificationPayload

        Raises:
            ClassifierError: On any failure to obtain a JSON object
        """
        cfg = model_config or self.config
        if not cfg.api_key:
            raise ClassifierError("Missing OpenAI API key.")

        try:
            user_content = self._build_user_content(front_image, back_image, cfg.image_detail)
        except (OSError, Image.DecompressionBombError) as e:
            raise ClassifierError(f"Unreadable image: {e}") from e

        body = {
            "model": cfg.model,
            "temperature": cfg.temperature,
            "top_p": cfg.top_p,
            "max_tokens": cfg.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": prompt_text or self._prompt_text},
                {"role": "user", "content": user_content},
            ],
        }

        url = f"{cfg.api_base.rstrip('/')}/chat/completions"
        logger.info(f"Classifying with {cfg.model} (back: {'yes' if back_image else 'no'})")
        response = self._post_with_retry(url, body, cfg.api_key)

        raw = self._parse_content(response)
        payload = normalize(raw)

        if self.moderation.enabled:
            payload = payload.with_annotation("moderation", self._moderate(payload, cfg))

        return payload

    # ── internals ───────────────────────────────────────

    @staticmethod
    def _build_user_content(front_image: str, back_image: Optional[str], detail: str) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": "SIDE: front"},
            {"type": "image_url", "image_url": {"url": to_image_url(front_image), "detail": detail}},
        ]
        if back_image:
            content.append({"type": "text", "text": "SIDE: back"})
            content.append({"type": "image_url", "image_url": {"url": to_image_url(back_image), "detail": detail}})
        return content

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _post_with_retry(self, url: str, body: dict, api_key: str) -> requests.Response:
        attempts = self.retry.max_retries + 1
        for attempt in range(attempts):
            is_last = attempt == attempts - 1
            try:
                response = self.session.post(
                    url, json=body, headers=self._headers(api_key), timeout=self.http.timeout
                )
            except requests.RequestException as e:
                if is_last:
                    raise ClassifierError(f"OpenAI transport error after {attempts} attempts: {e}") from e
                logger.warning(f"OpenAI transport error (attempt {attempt + 1}/{attempts}): {e}")
                self.retry.wait(attempt)
                continue

            code = response.status_code
            if 200 <= code < 300:
                return response

            text = (response.text or "")[:ERROR_BODY_LIMIT]
            if is_retriable_status(code) and not is_last:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                logger.warning(f"OpenAI HTTP {code} (attempt {attempt + 1}/{attempts}), retrying")
                self.retry.wait(attempt, retry_after)
                continue

            raise ClassifierError(f"OpenAI HTTP {code}: {text}", status_code=code, body=text)

        # unreachable: the last attempt always returns or raises
        raise ClassifierError("OpenAI request failed.")

    @staticmethod
    def _parse_content(response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise ClassifierError(f"Malformed response body: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        if not isinstance(content, str) or not content.strip():
            raise ClassifierError("Empty model response.")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise ClassifierError(f"Model returned non-JSON content: {e}") from e

        if not isinstance(parsed, dict):
            raise ClassifierError("Unexpected model response.")
        return parsed

    def _moderate(self, payload: ClassificationPayload, cfg: OpenAIConfig) -> Dict[str, Any]:
        """Run the moderation endpoint over transcribed text. Never raises."""
        parts = [
            payload.front.text.full_text or "",
            payload.back.text.full_text or "",
            payload.secret_description,
        ]
        text = "\n".join(p for p in parts if p).strip()
        if not text:
            return {"skipped": "no text"}

        url = f"{cfg.api_base.rstrip('/')}/moderations"
        body = {"model": self.moderation.model, "input": text}
        try:
            response = self.session.post(
                url, json=body, headers=self._headers(cfg.api_key), timeout=self.moderation.timeout
            )
        except requests.RequestException as e:
            logger.warning(f"Moderation call failed: {e}")
            return {"error": str(e)[:ERROR_BODY_LIMIT]}

        if not 200 <= response.status_code < 300:
            text_body = (response.text or "")[:ERROR_BODY_LIMIT]
            logger.warning(f"Moderation HTTP {response.status_code}: {text_body}")
            return {"error": f"HTTP {response.status_code}: {text_body}"}

        try:
            data = response.json()
            result = data["results"][0]
            categories = result.get("categories") or {}
            return {
                "model": data.get("model") or self.moderation.model,
                "flagged": bool(result.get("flagged", False)),
                "categories": sorted(k for k, v in categories.items() if v),
                "scores": dict(result.get("category_scores") or {}),
            }
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning(f"Moderation response malformed: {e}")
            return {"error": f"Malformed moderation response: {e}"}
