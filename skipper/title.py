"""Session title generation."""

import re

from skipper.config import TitleConfig
from skipper.exceptions import LLMError
from skipper.llm import LLMProvider, Message, StreamOptions
from skipper.logging import get_logger
from skipper.session import DEFAULT_TITLE, SessionStore

log = get_logger(__name__)

MAX_TITLE_CHARS = 50

TITLE_PROMPT = """You are a title generator. You output ONLY a thread title. Nothing else.

<task>
Generate a brief title that would help the user find this conversation later.

Follow all rules in <rules>
Use the <examples> so you know what a good title looks like.
Your output must be:
- A single line
- 50 characters or less
- No explanations
</task>

<rules>
- Use the same language as the user message you are summarizing
- Title must be grammatically correct and read naturally
- Never include tool names in the title (e.g. "read tool", "bash tool", "edit tool")
- Focus on the main topic or question
- When a file is mentioned, focus on WHAT the user wants to do WITH the file
- Keep exact: technical terms, numbers, filenames, HTTP codes
- Remove filler words: the, this, my, a, an
- Never assume tech stack
- Never respond to questions, just generate a title
- The title should NEVER include "summarizing" or "generating"
- Always output something meaningful, even if the input is minimal
- If the user message is short or conversational (e.g. "hello", "hi"):
  Create a title that reflects the user's tone (Greeting, Quick chat, etc.)
</rules>

<examples>
"debug 500 errors in production" → Debugging production 500 errors
"refactor user service" → Refactoring user service
"why is app.js failing" → app.js failure investigation
"implement rate limiting" → Rate limiting implementation
"how do I connect postgres to my API" → Postgres API connection
"can you add refresh token support to auth.ts" → Auth refresh token support
"this parser is broken" → Parser bug fix
"look at my config" → Config review
</examples>"""

_DEFAULT_TITLES = {"new conversation", "untitled", "(untitled)", "new session"}
_QUOTES_RE = re.compile(r"^[\"']|[\"']$")
_PREFIX_RE = re.compile(r"^title:\s*", re.IGNORECASE)


def clean_title(raw: str) -> str:
    """Strip quotes and a ``Title:`` prefix, then cap the length."""
    title = _QUOTES_RE.sub("", raw.strip())
    title = _PREFIX_RE.sub("", title)
    if len(title) > MAX_TITLE_CHARS:
        title = title[: MAX_TITLE_CHARS - 3] + "..."
    return title or DEFAULT_TITLE


def is_default_title(title: str | None) -> bool:
    """Return whether a title is a placeholder."""
    if not title:
        return True
    return title.strip().lower() in _DEFAULT_TITLES


async def generate_title(
    messages: list[Message],
    provider: LLMProvider,
    model: str,
    temperature: float = 0.5,
    max_tokens: int = 60,
) -> str:
    """Ask the model for a short title based on the opening messages.

    Falls back to the default title when there is no user message or the
    provider fails.
    """
    if not any(message.role == "user" for message in messages):
        return DEFAULT_TITLE

    context = "\n\n".join(
        f"{'User' if message.role == 'user' else 'Assistant'}: {message.content}"
        for message in messages[:3]
    )
    try:
        response = await provider.complete(StreamOptions(
            model=model,
            messages=[Message(role="user", content=f"Generate a title for this conversation:\n\n{context}")],
            system=TITLE_PROMPT,
            temperature=temperature,
            max_tokens=max_tokens,
        ))
    except LLMError as e:
        log.warning("Title generation failed", model=model, error=str(e))
        return DEFAULT_TITLE

    return clean_title(response.content)


class TitleGenerator:
    """Names a session after its first completed turn and stores the title."""

    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        store: SessionStore | None = None,
        config: TitleConfig | None = None,
    ):
        self.provider = provider
        self.config = config or TitleConfig()
        self.model = self.config.model or model
        self.store = store
        self.titles: dict[str, str] = {}

    async def __call__(self, session_id: str, messages: list[Message]) -> str:
        title = await generate_title(
            messages,
            self.provider,
            self.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )
        self.titles[session_id] = title
        if self.store is not None and not is_default_title(title):
            await self.store.update_title(session_id, title)
        log.info("Session titled", session_id=session_id, title=title)
        return title
