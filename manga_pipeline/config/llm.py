"""
LLM configuration for story and episode writing.

The text-generation collaborator is a dspy.LM chosen by which provider key
is present in the environment. Calls time out after LLM_TIMEOUT seconds;
retries and circuit breaking are applied by the caller (see
core/generation.py), not by dspy.
"""

import os

import dspy
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Timeout for LLM calls (seconds)
LLM_TIMEOUT = 120

# Long-form manga scripts need room
MAX_TOKENS = 8192


def get_inference_lm() -> dspy.LM:
    """
    Get the LM used to write stories and episodes.

    Priority order:
    1. Gemini (GOOGLE_API_KEY)
    2. Claude (ANTHROPIC_API_KEY)
    3. OpenAI (OPENAI_API_KEY)
    """
    if os.getenv("GOOGLE_API_KEY"):
        return dspy.LM(
            "gemini/gemini-2.5-pro",
            api_key=os.getenv("GOOGLE_API_KEY"),
            max_tokens=MAX_TOKENS,
            temperature=1.0,
            timeout=LLM_TIMEOUT,
        )
    elif os.getenv("ANTHROPIC_API_KEY"):
        return dspy.LM(
            "anthropic/claude-sonnet-4-20250514",
            api_key=os.getenv("ANTHROPIC_API_KEY"),
            max_tokens=MAX_TOKENS,
            temperature=1.0,
            timeout=LLM_TIMEOUT,
        )
    elif os.getenv("OPENAI_API_KEY"):
        return dspy.LM(
            "openai/gpt-4.1",
            api_key=os.getenv("OPENAI_API_KEY"),
            max_tokens=MAX_TOKENS,
            temperature=1.0,
            timeout=LLM_TIMEOUT,
        )
    else:
        raise ValueError(
            "No API key found. Set GOOGLE_API_KEY, ANTHROPIC_API_KEY, or OPENAI_API_KEY in .env"
        )


def get_inference_model_name() -> str:
    """Get the name of the inference model that will be used."""
    if os.getenv("GOOGLE_API_KEY"):
        return "gemini-2.5-pro"
    elif os.getenv("ANTHROPIC_API_KEY"):
        return "claude-sonnet-4-20250514"
    elif os.getenv("OPENAI_API_KEY"):
        return "gpt-4.1"
    else:
        return "unknown"
