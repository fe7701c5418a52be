# prompts.py
from typing import Any, Dict, List, Optional

PROMPT_PRESETS: Dict[str, str] = {
    "default": "",
    "concise": "Respond concisely and directly. Avoid unnecessary elaboration.",
    "technical": (
        "You are a senior software engineer. Provide technical, precise answers with code examples when relevant."
    ),
    "creative": "Be creative and expressive. Think outside the box.",
    "tutor": "Explain concepts step by step as a patient tutor would. Use analogies and examples.",
    "code-review": "Review code for bugs, security issues, and improvements. Be thorough and specific.",
    "writer": (
        "You are a skilled writer. Help with drafting, editing, and improving text. "
        "Focus on clarity, tone, and structure."
    ),
    "analyst": (
        "Analyze information methodically. Break down complex topics, identify key patterns, "
        "and provide data-driven insights."
    ),
}

_REWRITE_ONLY = "Output only the {what} with no explanations or commentary."

TRANSFORM_PROMPTS: Dict[str, str] = {
    "summarize": (
        "You are a summarization assistant. Provide a clear, concise summary of the provided text. "
        "Capture the key points, main arguments, and essential information. Use bullet points for clarity "
        "when appropriate. Keep the summary significantly shorter than the original."
    ),
    "fix-grammar": (
        "You are a proofreading assistant. Fix all spelling and grammar errors in the provided text. "
        "Preserve the original meaning, tone, and formatting. " + _REWRITE_ONLY.format(what="corrected text")
    ),
    "improve-writing": (
        "You are a writing assistant. Improve the clarity, flow, and style of the provided text while "
        "preserving its original meaning. Make it more engaging and readable. "
        + _REWRITE_ONLY.format(what="improved text")
    ),
    "make-longer": (
        "You are a writing assistant. Expand the provided text by adding relevant detail, examples, and "
        "elaboration while maintaining its original meaning and tone. Make it more comprehensive and thorough. "
        + _REWRITE_ONLY.format(what="expanded text")
    ),
    "make-shorter": (
        "You are a concise writing assistant. Condense the provided text to be significantly shorter while "
        "preserving its core meaning and key points. Remove redundancy and unnecessary details. "
        + _REWRITE_ONLY.format(what="shortened text")
    ),
    "proofread": (
        "You are a meticulous proofreader. Review the provided text and list all errors found (spelling, "
        "grammar, punctuation, style). For each error, show the original text and the suggested correction. "
        "If no errors are found, say so. Use markdown formatting for clarity."
    ),
    "explain-simply": (
        "You are a patient teacher. Explain the provided text in simple terms that anyone can understand, "
        "even without background knowledge. Use everyday analogies and avoid jargon. Break complex ideas "
        "into easy-to-grasp concepts."
    ),
    "explain-code": (
        "You are a programming tutor. Explain the provided code step by step in clear, plain language. "
        "Cover what each section does, why it works that way, and any important patterns or concepts used. "
        "Use markdown formatting with code blocks where helpful."
    ),
    "rephrase-tweet": (
        "You are a social media expert. Rephrase the provided text as a tweet. Keep it under 280 characters, "
        "make it engaging and shareable. Use a punchy, concise style. "
        "Output only the tweet text with no explanations, quotes, or commentary."
    ),
    "tone-casual": (
        "You are a writing assistant. Rewrite the provided text in a casual, conversational tone. Make it "
        "sound natural and relaxed while preserving the original meaning. "
        + _REWRITE_ONLY.format(what="rewritten text")
    ),
    "tone-confident": (
        "You are a writing assistant. Rewrite the provided text in a confident, assertive tone. Make it sound "
        "decisive and authoritative while preserving the original meaning. Remove hedging language and "
        "qualifiers. " + _REWRITE_ONLY.format(what="rewritten text")
    ),
    "tone-friendly": (
        "You are a writing assistant. Rewrite the provided text in a warm, friendly, and approachable tone. "
        "Make it feel welcoming and personable while preserving the original meaning. "
        + _REWRITE_ONLY.format(what="rewritten text")
    ),
    "tone-professional": (
        "You are a writing assistant. Rewrite the provided text in a professional, formal tone suitable for "
        "business communication. Maintain the original meaning while making it polished and authoritative. "
        + _REWRITE_ONLY.format(what="rewritten text")
    ),
    "translate": (
        "You are a professional translator. Translate the provided text into {language}. Preserve the "
        "meaning, tone, and formatting. " + _REWRITE_ONLY.format(what="translation")
    ),
}

DEFAULT_TRANSLATE_LANGUAGE = "English"


def system_prompt_for(preset: Optional[str], custom: str = "") -> str:
    """Custom prompt wins; otherwise the named preset (unknown names -> no prompt)."""
    if custom and custom.strip():
        return custom.strip()
    return PROMPT_PRESETS.get(preset or "default", "")


def build_transform_messages(command: str, text: str, language: Optional[str] = None) -> List[Dict[str, Any]]:
    if command not in TRANSFORM_PROMPTS:
        raise KeyError(f"unknown transform command: {command}")
    if not text or not text.strip():
        raise ValueError("no text to transform")
    system = TRANSFORM_PROMPTS[command]
    if command == "translate":
        system = system.format(language=(language or DEFAULT_TRANSLATE_LANGUAGE).strip())
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": text},
    ]
