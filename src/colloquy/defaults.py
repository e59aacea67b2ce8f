"""Built-in prompts, chat templates, providers and agents."""

from __future__ import annotations

from typing import Any

CHAT_SYSTEM_PROMPT = (
    "A conversation between You and Me.\n\n"
    "We collaboratively seek knowledge, truth and learn together.\n\n"
    "We are peers, thus avoid being overly polite.\n\n"
    "You should first think about the reasoning process.\n\n"
    "Output such reasoning process in a single plaintext line without any newline, prefixed with 🧠:.\n\n"
    "Reason about how much information is appropriate. Too much information will overwhelm me; "
    "too general information is useless.\n\n"
    "Assess my intention behind a question as it may not be formulated perfectly.\n\n"
    "Do not repeat information already provided earlier in the chat.\n\n"
    "Use Markdown to organize your reply, but avoid the top two heading levels (#, ##); "
    "they are reserved for me.\n\n"
    "Use qualifiers that reflect your confidence. If you are unsure, say you don't know.\n\n"
    "Don't elide any code from your output if the answer requires coding.\n\n"
    "After you finish your answer, create a single plaintext line summary in the format: "
    "you asked about [summary of question], I answered with [summary of answer], "
    "without any newline, prefixed with 📝:.\n\n"
    "Leave an empty line between the reasoning line (🧠:), the main answer and the summary line (📝:).\n\n"
)

TOPIC_GEN_PROMPT = (
    "Summarize the topic of our conversation above in two or three words. "
    "Respond only with those words."
)

TOPIC_PLACEHOLDER = "?"

CHAT_TEMPLATE = """# topic: {{topic}}
- file: {{filename}}
{{optional_headers}}---

{{user_prefix}}
"""

DEFAULT_PROVIDERS: dict[str, dict[str, Any]] = {
    "openai": {
        "endpoint": "https://api.openai.com/v1/chat/completions",
    },
    "anthropic": {
        "endpoint": "https://api.anthropic.com/v1/messages",
    },
    "googleai": {
        "endpoint": (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "{{model}}:streamGenerateContent?key={{secret}}"
        ),
    },
    "ollama": {
        "endpoint": "http://localhost:11434/v1/chat/completions",
        "disable": True,
    },
}

DEFAULT_API_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "googleai": "GOOGLEAI_API_KEY",
    "copilot": "GITHUB_TOKEN",
    "azure": "AZURE_API_KEY",
}

DEFAULT_AGENTS: list[dict[str, Any]] = [
    {
        "name": "ChatGPT4o",
        "provider": "openai",
        "model": {"model": "gpt-4o", "temperature": 1.1, "top_p": 1},
    },
    {
        "name": "ChatGPT5",
        "provider": "openai",
        "model": {"model": "gpt-5"},
    },
    {
        "name": "Claude-Sonnet",
        "provider": "anthropic",
        "model": {"model": "claude-sonnet-4-20250514", "temperature": 0.8, "top_p": 1},
    },
    {
        "name": "Claude-Haiku",
        "provider": "anthropic",
        "model": {"model": "claude-3-5-haiku-latest", "temperature": 0.8, "top_p": 1},
    },
    {
        "name": "Gemini2.5-Flash",
        "provider": "googleai",
        "model": {"model": "gemini-2.5-flash", "temperature": 1.1, "top_p": 1},
    },
    {
        "name": "OllamaLlama3.1-8B",
        "provider": "ollama",
        "model": {"model": "llama3.1", "temperature": 0.6, "top_p": 1, "min_p": 0.05},
        "disable": True,
    },
]


def render_template(template: str, replacements: dict[str, str]) -> str:
    """Replace every ``{{key}}`` placeholder present in ``replacements``."""

    rendered = template
    for key, value in replacements.items():
        rendered = rendered.replace(key, value)
    return rendered
