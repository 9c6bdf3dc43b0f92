"""User story tools served over MCP."""
import asyncio
import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from .registry import ToolFailure, ToolRegistry, ToolResult, ToolSuccess

logger = logging.getLogger(__name__)

_ACTIONS = r"(View all|view|add|update|delete)"
_NAME = r"\[?\w+(?: \w+)*\]?"

# A [Role] wants to [action] a|an|all [object]
WANTS_TO_FORMAT = re.compile(
    rf"^A\s+{_NAME}\s+wants to\s+\[?{_ACTIONS}\]?\s+(a|an|all)\s+{_NAME}$", re.IGNORECASE
)
# As a [Role], I want to [action] a|an|all [object]
I_WANT_TO_FORMAT = re.compile(
    rf"^As a\s+{_NAME}\s*,?\s*I want to\s+\[?{_ACTIONS}\]?\s+(a|an|all)\s+{_NAME}$",
    re.IGNORECASE,
)

FORMAT_HELP = (
    "Invalid format. Examples of correct formats:\n"
    '- "As a User, I want to add a task"\n'
    '- "A Manager wants to view all reports"'
)


def is_valid_user_story(text: str) -> bool:
    """Check story text against the two accepted sentence formats."""
    if not text or not isinstance(text, str):
        return False
    normalized = " ".join(text.split())
    return bool(WANTS_TO_FORMAT.match(normalized) or I_WANT_TO_FORMAT.match(normalized))


class UserStoryStore:
    """In-memory user story storage."""

    def __init__(self):
        self.stories: List[Dict[str, str]] = []
        self._lock = asyncio.Lock()

    async def add(self, title: Optional[str], description: str) -> Optional[Dict[str, str]]:
        """Store a new story; returns None if the text already exists."""
        async with self._lock:
            if any(story["storyText"] == description for story in self.stories):
                return None
            story = {
                "name": str(uuid.uuid4()),
                "storyNumber": title or "",
                "storyText": description,
                "isIgnored": "false",
                "isStoryProcessed": "false",
            }
            self.stories.append(story)
        return story

    def all(self) -> List[Dict[str, str]]:
        return list(self.stories)


class UserStoryTools:
    def __init__(self, store: UserStoryStore):
        self.store = store

    async def create_user_story(self, description: str, title: Optional[str] = None) -> ToolResult:
        """Validate and store a user story."""
        if not is_valid_user_story(description):
            return ToolFailure(message=FORMAT_HELP)

        story = await self.store.add(title, description)
        if story is None:
            return ToolFailure(message="A user story with this text already exists")

        logger.info(f"Created user story {story['name']}")
        return ToolSuccess({"success": True, "story": story})

    async def list_user_stories(self) -> ToolResult:
        """List all stored user stories."""
        stories = self.store.all()
        return ToolSuccess({
            "success": True,
            "stories": [
                {
                    "title": story["storyNumber"],
                    "description": story["storyText"],
                    "isIgnored": story["isIgnored"] == "true",
                }
                for story in stories
            ],
            "note": f"{len(stories)} stories found" if stories else "No stories found",
        })


def register_user_story_tools(registry: ToolRegistry, store: Optional[UserStoryStore] = None) -> UserStoryTools:
    """Register create_user_story and list_user_stories."""
    tools = UserStoryTools(store or UserStoryStore())

    registry.register_tool(
        name="create_user_story",
        description=(
            "Creates a user story and validates its format. User stories must follow the "
            'format: "As a [Role], I want to [action] a [object]" or '
            '"A [Role] wants to [action] a [object]"'
        ),
        input_schema={
            "type": "object",
            "properties": {
                "title": {
                    "type": "string",
                    "description": "Optional title or ID for the user story",
                },
                "description": {
                    "type": "string",
                    "description": (
                        "The user story text, e.g. \"As a User, I want to add a task\" "
                        "or \"A Manager wants to view all reports\""
                    ),
                },
            },
            "required": ["description"],
            "additionalProperties": False,
        },
        handler=tools.create_user_story,
    )

    registry.register_tool(
        name="list_user_stories",
        description="Lists all existing user stories",
        input_schema={"type": "object", "properties": {}, "additionalProperties": False},
        handler=tools.list_user_stories,
    )

    return tools
