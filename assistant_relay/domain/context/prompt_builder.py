from typing import List, Optional, Tuple
from datetime import datetime, timezone, tzinfo

from .workspace_loader import WorkspaceDocs


PREAMBLE = (
    "You are a personal AI assistant responding through a chat relay.\n"
    "You have full engine capabilities: tools, file access, web search, git, and more.\n"
    "Keep responses concise and conversational for a chat client."
)

MEMORY_MANAGEMENT = (
    "When the user shares important information, use these tags in your response:\n"
    "- [REMEMBER: fact to store] - for facts to remember\n"
    "- [GOAL: task | DEADLINE: optional date] - for goals\n"
    "- [DONE: search text] - to mark a goal as completed\n"
    "\n"
    "These tags are automatically processed and hidden from the user."
)

# Header per section, in emission order. The engine weighs later context more
# heavily, so this order must not change.
SECTION_PERSONA = "WHO YOU ARE"
SECTION_WORKSPACE_GUIDE = "WORKSPACE GUIDE"
SECTION_ENVIRONMENT = "LOCAL ENVIRONMENT"
SECTION_CURATED_MEMORY = "YOUR MEMORY"
SECTION_FACTS_GOALS = "FACTS & GOALS"
SECTION_RELEVANT_HISTORY = "RELEVANT PAST CONTEXT"
SECTION_MEMORY_MANAGEMENT = "MEMORY MANAGEMENT"
SECTION_USER_MESSAGE = "USER MESSAGE"


def format_current_time(now: datetime, tz: tzinfo) -> str:
    """Render the current time in the user's timezone"""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    return local.strftime("%A, %B %d, %Y at %I:%M %p %Z").strip()


class PromptBuilder:
    """Composes the outbound engine payload from user input and context"""

    def __init__(self, user_name: str = "", tz: tzinfo = timezone.utc):
        self.user_name = user_name
        self.tz = tz

    def build(
        self,
        user_message: str,
        docs: WorkspaceDocs,
        store_context: Optional[str] = None,
        relevant_history: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> str:
        """
        Build the enriched prompt.

        Sections with empty content are omitted entirely. Apart from the
        current-time line the output depends only on the arguments.
        """

        parts: List[str] = [PREAMBLE]

        if self.user_name:
            parts.append(f"\nYou are assisting {self.user_name}.")

        parts.append(f"Current time: {format_current_time(now or datetime.now(timezone.utc), self.tz)}")

        sections: List[Tuple[str, Optional[str]]] = [
            (SECTION_PERSONA, docs.persona),
            (SECTION_WORKSPACE_GUIDE, docs.workspace_guide),
            (SECTION_ENVIRONMENT, docs.environment_notes),
            (SECTION_CURATED_MEMORY, docs.curated_memory),
            (SECTION_FACTS_GOALS, store_context),
            (SECTION_RELEVANT_HISTORY, relevant_history),
        ]
        for header, content in sections:
            if content and content.strip():
                parts.append(f"\n## {header}\n")
                parts.append(content.strip())

        parts.append(f"\n## {SECTION_MEMORY_MANAGEMENT}\n{MEMORY_MANAGEMENT}")
        parts.append(f"\n## {SECTION_USER_MESSAGE}\n{user_message}")

        return "\n".join(parts)
