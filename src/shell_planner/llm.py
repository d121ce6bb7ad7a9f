# llm.py
# Ollama client. Talks to Ollama's OpenAI-compatible endpoint through the
# openai SDK and returns raw JSON plan text plus a conversation carry-over.

import logging
import os
from pathlib import Path

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_FILENAME = "system_prompt.txt"

DEFAULT_SYSTEM_PROMPT = """\
You are a penetration-testing assistant running on {OS}.

Turn the user's task into a plan of shell commands and respond with ONLY a
JSON object matching this schema:

{
  "explanation": "one or two sentences describing the plan",
  "steps": [
    {
      "step": 1,
      "action_type": "command",
      "command": "the exact command line to run",
      "purpose": "what this step does"
    }
  ]
}

Rules:
- action_type is "command" for anything that must run on the host; use any
  other value (e.g. "info") for notes that should not be executed.
- Commands must be valid for {OS}.
- When a value is only known after an earlier step or from the task, write a
  placeholder instead of inventing it: {target_ip}, {subnet_cidr} or
  {default_gateway}.
- A step whose purpose is "find default gateway" must print the routing table
  (e.g. "ip route" or "ipconfig"); its output provides {default_gateway}.
- Optional metasploit-style fields may be added to a step: "PAYLOAD:",
  "LHOST:", "RHOST:", "LPORT:", "RPORT:", "EXITFUNC:", "TARGETURI:", and an
  "options" object for anything else.
"""

VALIDATION_PROMPT = (
    "<|im_start|>system\nTest<|im_end|>\n"
    "<|im_start|>user\nTest<|im_end|>\n"
    "<|im_start|>assistant\n"
)


class LLMError(Exception):
    """Raised when the model cannot be reached or returns nothing usable."""


class GenerationContext(BaseModel):
    """Conversation carry-over between generate() calls. Opaque to callers."""

    messages: list[dict[str, str]] = Field(default_factory=list)


class OllamaClient:
    """
    Generates plans from a local Ollama model.

    Example:
        client = OllamaClient("http://localhost:11434", "phi4-mini:latest", config_dir)
        text, context = await client.generate(prompt, None, "Kali Linux")
    """

    def __init__(
        self,
        host: str,
        model: str,
        config_dir: Path,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._host = host.rstrip("/")
        self._model = model
        self._config_dir = Path(config_dir)
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = AsyncOpenAI(
            base_url=f"{self._host}/v1",
            # Ollama ignores the key but the SDK insists on one.
            api_key=os.getenv("OLLAMA_API_KEY", "ollama"),
        )

    @property
    def model(self) -> str:
        return self._model

    def load_system_prompt(self, os_name: str) -> str:
        path = self._config_dir / SYSTEM_PROMPT_FILENAME
        try:
            template = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise LLMError(f"Failed to read system prompt file at: {path}") from exc
        return template.replace("{OS}", os_name)

    async def generate(
        self,
        prompt: str,
        context: GenerationContext | None,
        os_name: str,
    ) -> tuple[str, GenerationContext]:
        history = list(context.messages) if context else []
        user_message = {"role": "user", "content": prompt}
        messages = [
            {"role": "system", "content": self.load_system_prompt(os_name)},
            *history,
            user_message,
        ]

        kwargs = {}
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature
        if self._max_tokens is not None:
            kwargs["max_tokens"] = self._max_tokens

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                response_format={"type": "json_object"},
                **kwargs,
            )
        except OpenAIError as exc:
            raise LLMError(
                f"Ollama API error: {exc}. Verify model '{self._model}' exists "
                f"and API at {self._host} is reachable"
            ) from exc

        text = (response.choices[0].message.content or "").strip()
        new_context = GenerationContext(
            messages=[*history, user_message, {"role": "assistant", "content": text}]
        )
        return text, new_context

    async def validate_model(self, os_name: str) -> None:
        response, _ = await self.generate(VALIDATION_PROMPT, None, os_name)
        if not response:
            raise LLMError(
                "Model validation failed. Check:\n"
                "1. Model exists (ollama list)\n"
                "2. API reachable\n"
                "3. Port 11434 accessible"
            )
