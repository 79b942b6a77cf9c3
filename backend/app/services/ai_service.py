# /app/services/ai_service.py

import asyncio
import logging
from typing import Dict, List, Optional

from google import genai
from google.genai.types import GenerateContentConfig, HttpOptions
from openai import AsyncOpenAI

from app.config.settings import settings
from app.config.persona import AGENT_SYSTEM_PROMPT_TEMPLATE, CLOSING_DIRECTIVE, HANDOFF_MARKER
from app.models.agent import AIAgent, CompletionResult
from app.utils.circuit_breaker import CircuitBreaker
from app.utils.metrics import ai_requests_counter
from app.workflows.errors import CompletionError

# This service encapsulates all interactions with external AI models for
# AI-agent conversations: Gemini first when configured, OpenAI as fallback.

logger = logging.getLogger(__name__)


def build_system_prompt(agent: AIAgent, closing: bool = False) -> str:
    prompt = AGENT_SYSTEM_PROMPT_TEMPLATE.format(
        system_prompt=agent.system_prompt,
        name=agent.name,
        language=agent.language,
        tone=agent.tone,
        goal=agent.goal or "help the customer",
        marker=HANDOFF_MARKER,
    )
    if closing:
        prompt = f"{prompt}\n\n{CLOSING_DIRECTIVE}"
    return prompt


class AIService:
    def __init__(self):
        if settings.gemini_api_key:
            http_options = HttpOptions(api_version='v1')
            self.gemini_client = genai.Client(api_key=settings.gemini_api_key, http_options=http_options)
            self.model_name = settings.gemini_model
            logger.info(f"Using Gemini model: {self.model_name}")
        else:
            self.gemini_client = None
            self.model_name = None

        if settings.openai_api_key:
            self.openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
        else:
            self.openai_client = None

        self.circuit_breaker = CircuitBreaker("gemini")
        self.openai_breaker = CircuitBreaker("openai")

    async def complete(
        self,
        agent: AIAgent,
        session_id: str,
        user_message: str,
        history: Optional[List[Dict[str, str]]] = None,
        closing: bool = False,
    ) -> CompletionResult:
        """
        Generate the agent's next reply with failover.

        Args:
            agent: The AI agent owning the conversation
            session_id: Session the turn belongs to (for logs only)
            user_message: The contact's message, verbatim
            history: Prior turns as {"role": "user"|"assistant", "content": ...}
            closing: Append the directive that forces a closing reply

        Raises:
            CompletionError: when no provider produced a reply
        """
        system_prompt = build_system_prompt(agent, closing)
        history = history or []

        if self.gemini_client:
            try:
                reply = await self.circuit_breaker.call(self._generate_gemini_response, system_prompt, history, user_message)
                if reply:
                    ai_requests_counter.labels(model="gemini", status="success").inc()
                    return CompletionResult(reply=reply, agent_name=agent.name)
            except Exception as e:
                logger.error(f"Gemini API call failed for session {session_id}: {e}")
                ai_requests_counter.labels(model="gemini", status="error").inc()

        if self.openai_client:
            try:
                reply = await self.openai_breaker.call(self._generate_openai_response, system_prompt, history, user_message)
                if reply:
                    ai_requests_counter.labels(model="openai", status="success").inc()
                    return CompletionResult(reply=reply, agent_name=agent.name)
            except Exception as e:
                logger.error(f"OpenAI fallback failed for session {session_id}: {e}")
                ai_requests_counter.labels(model="openai", status="error").inc()

        raise CompletionError(f"No AI provider produced a reply for session {session_id}")

    async def _generate_openai_response(self, system_prompt: str, history: List[Dict[str, str]], message: str) -> str:
        messages = [{"role": "system", "content": system_prompt}]
        for turn in history:
            messages.append({"role": turn.get("role", "user"), "content": turn.get("content", "")})
        messages.append({"role": "user", "content": message})

        response = await self.openai_client.chat.completions.create(
            model=settings.openai_model,
            messages=messages,
            max_tokens=settings.ai_max_tokens,
            temperature=settings.ai_temperature,
        )
        return (response.choices[0].message.content or "").strip()

    async def _generate_gemini_response(self, system_prompt: str, history: List[Dict[str, str]], message: str) -> str:
        transcript = "\n".join(
            f"{'Customer' if turn.get('role') == 'user' else 'Agent'}: {turn.get('content', '')}"
            for turn in history
        )
        contents = f"{transcript}\nCustomer: {message}" if transcript else message

        response = await asyncio.to_thread(
            self.gemini_client.models.generate_content,
            model=self.model_name,
            contents=contents,
            config=GenerateContentConfig(
                system_instruction=system_prompt,
                temperature=settings.ai_temperature,
                max_output_tokens=settings.ai_max_tokens,
            ),
        )
        return (response.text or "").strip()


# Globally accessible instance
ai_service = AIService()
