from typing import Optional

from openai import OpenAI, OpenAIError

from app.config import GEMINI_BASE_URL, GEMINI_MODEL
from app.errors import UpstreamError
from app.session_manager import MODEL_ROLE, USER_ROLE, Turn


# Stored roles -> chat-completions roles
WIRE_ROLES = {
    USER_ROLE: "user",
    MODEL_ROLE: "assistant",
}


class GeminiClient:
    """Chat completions against Gemini through its OpenAI-compatible endpoint."""

    def __init__(self, api_key: Optional[str], model: str = GEMINI_MODEL,
                 base_url: str = GEMINI_BASE_URL, timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise UpstreamError("API_KEY environment variable is not set")
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
        return self._client

    def generate(self, turns: list[Turn]) -> Optional[str]:
        """Send the ordered turns and return the reply text, or None when there is none."""
        messages = [{"role": WIRE_ROLES[t.role], "content": t.content} for t in turns]
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages
            )
        except OpenAIError as e:
            raise UpstreamError(f"Gemini chat completion failed: {e}") from e

        if not response.choices:
            return None
        return response.choices[0].message.content or None
