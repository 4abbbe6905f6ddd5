"""
Response generation from a synthesized memory context.
"""

import json
from typing import Any, Dict, Optional

from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are an assistant with a layered memory of earlier conversations.
Answer the user's message. Use the memory context below when it is relevant and never invent memories.

Memory context (JSON):
{context}"""

TEMPLATE_RESPONSES = {
    'high': 'I have a comprehensive understanding of your request.',
    'medium': 'I can help with that based on our context.',
}
DEFAULT_TEMPLATE = "I'll do my best to help with your request."


def template_response(context: Dict[str, Any]) -> str:
    level = context.get('confidence_scores', {}).get('confidence_level', 'none')
    return TEMPLATE_RESPONSES.get(level, DEFAULT_TEMPLATE)


class ResponseGenerator:
    """Generates replies with Bedrock when configured, otherwise from confidence templates."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm

    def generate(self, query: str, context: Dict[str, Any]) -> str:
        if self.llm is None:
            return template_response(context)

        memory_context = {key: value for key, value in context.items() if key != 'confidence_scores'}
        try:
            text = self.llm.complete(SYSTEM_PROMPT.format(context=json.dumps(memory_context, default=str)), query)
        except BedrockLLMError as e:
            logger.warning(f'LLM response generation failed, using template response: {e}')
            return template_response(context)

        if not text:
            logger.warning('LLM returned an empty response, using template response')
            return template_response(context)
        return text
