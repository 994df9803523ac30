#!/usr/bin/env python3
"""
Completion Engine - Gemini integration for the gatekeeper

The engine is used as an opaque collaborator: a static instruction text plus
ordered content turns go in, one complete text answer comes out. Gemini's
generate_content does not stream here; incremental delivery is the
ResponseDriver's job.
"""

from pathlib import Path
from typing import List, Optional

from google import genai
from google.genai import types

from dxsim.config import GEMINI_API_KEY, GEMINI_MODEL, SYSTEM_PROMPT_PATH
from dxsim.core.datashapes import EngineTurn
from dxsim.core.error_handler import EngineInitializationError, EngineInvocationError
from dxsim.error_logging import engine_logger, ErrorCodes


def load_system_prompt(path: Path = SYSTEM_PROMPT_PATH) -> str:
    """Read the gatekeeper instructions; raise EngineInitializationError if unreadable or empty."""
    try:
        text = Path(path).read_text(encoding='utf-8')
    except OSError as e:
        engine_logger.log_error(ErrorCodes.ENGINE_PROMPT_MISSING, f"Cannot read system prompt at {path}: {e}")
        raise EngineInitializationError(f"System prompt unavailable: {path}") from e
    if not text.strip():
        engine_logger.log_error(ErrorCodes.ENGINE_PROMPT_MISSING, f"System prompt at {path} is empty")
        raise EngineInitializationError(f"System prompt is empty: {path}")
    return text


class GeminiEngine:
    def __init__(self, client: genai.Client, model: str = GEMINI_MODEL, thinking_budget: int = -1):
        self.client = client
        self.model = model
        self.thinking_budget = thinking_budget

    @classmethod
    def from_api_key(cls, api_key: Optional[str] = GEMINI_API_KEY, model: str = GEMINI_MODEL) -> 'GeminiEngine':
        if not api_key:
            raise EngineInitializationError("GEMINI_API_KEY is not set")
        try:
            client = genai.Client(api_key=api_key)
        except Exception as e:
            raise EngineInitializationError(f"Could not create Gemini client: {e}") from e
        engine_logger.log_info(ErrorCodes.ENGINE_READY, f"Gemini client initialized for model {model}")
        return cls(client, model=model)

    def _build_contents(self, turns: List[EngineTurn]) -> List[types.Content]:
        contents = []
        for turn in turns:
            if turn.is_attachment:
                part = types.Part(file_data=types.FileData(file_uri=turn.file_uri, mime_type=turn.mime_type))
            else:
                part = types.Part(text=turn.text or "")
            contents.append(types.Content(role=turn.role.value, parts=[part]))
        return contents

    def complete(self, system_instruction: str, turns: List[EngineTurn]) -> str:
        """Run one generate_content call and return the answer text."""
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            thinking_config=types.ThinkingConfig(thinking_budget=self.thinking_budget),
            response_mime_type='text/plain',
        )
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=self._build_contents(turns),
                config=config,
            )
        except Exception as e:
            engine_logger.log_error(ErrorCodes.ENGINE_CALL_FAILED, f"generate_content on {self.model} failed: {e}")
            raise EngineInvocationError(str(e)) from e
        return response.text or ""


def create_gemini_engine() -> GeminiEngine:
    """Default engine factory used at cold start."""
    return GeminiEngine.from_api_key()
