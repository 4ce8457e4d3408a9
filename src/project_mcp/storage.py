"""
File-backed story storage.

All stories live in a single JSON array at ``<data_dir>/user-stories.json``.
The array order is significant: it is the listing order and the position
domain for reordering. Every operation re-reads the file, mutates an
in-memory list and writes the whole list back. There is no locking; one
process is expected to own the file.
"""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import List, Optional, Union

from .models import (
    ProgressState,
    Story,
    StoryPatch,
    StoryPriority,
    StoryStatus,
    utcnow,
)

logger = logging.getLogger("project_mcp.storage")

DATA_DIR_NAME = ".project-mcp-data"
STORIES_FILE_NAME = "user-stories.json"


class StoryStoreError(Exception):
    """Base class for errors raised by story store operations."""


class InvalidStoryStateError(StoryStoreError):
    """The story is in a progress state the operation does not allow."""


class InvalidPositionError(StoryStoreError):
    """A requested position is outside the valid range."""


class MalformedStoryError(StoryStoreError):
    """A record in an otherwise valid story file cannot be parsed."""


def resolve_data_dir(value: Optional[str] = None) -> Path:
    """
    Work out which directory holds the story file.

    Args:
        value (Optional[str]): Explicit directory. ``None`` falls back to the
            ``PROJECT_MCP_DATA_DIR`` environment variable, then to
            ``.project-mcp-data`` under the current working directory. An
            explicitly empty string selects ``.project-mcp-data`` under the
            user's home directory.

    Returns:
        Path: The data directory (not created yet).
    """
    if value is None:
        value = os.getenv("PROJECT_MCP_DATA_DIR")
        if value is None:
            return Path.cwd() / DATA_DIR_NAME
    if not value:
        return Path.home() / DATA_DIR_NAME
    return Path(value).expanduser()


class StoryStore:
    def __init__(self, data_dir: Union[str, Path, None] = None):
        if data_dir is None or isinstance(data_dir, str):
            data_dir = resolve_data_dir(data_dir)
        self.data_dir = Path(data_dir)
        self.stories_file = self.data_dir / STORIES_FILE_NAME
        logger.info(f"Using data directory: {self.data_dir}")

    # -------------------- persistence --------------------
    def load(self) -> List[Story]:
        """Read and normalize every story.

        A missing file, or one that is not a UTF-8 JSON array, yields an empty
        list. A single record that cannot be parsed raises
        MalformedStoryError so no later save overwrites it. Other read errors
        propagate.
        """
        try:
            raw = self.stories_file.read_bytes()
        except FileNotFoundError:
            return []

        try:
            records = json.loads(raw.decode("utf-8"))
        except ValueError as e:  # JSONDecodeError, UnicodeDecodeError
            logger.warning(
                f"Ignoring unreadable story file {self.stories_file}: {str(e)}"
            )
            return []
        if not isinstance(records, list):
            logger.warning(
                f"Ignoring story file {self.stories_file}: expected a JSON array, "
                f"got {type(records).__name__}"
            )
            return []

        stories = []
        for index, record in enumerate(records):
            try:
                stories.append(Story.from_dict(record))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise MalformedStoryError(
                    f"Story record {index} in {self.stories_file} is malformed "
                    f"({type(e).__name__}: {e})"
                ) from e
        return stories

    def save(self, stories: List[Story]) -> None:
        if not self.data_dir.exists():
            self.data_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.data_dir}")
        payload = json.dumps([story.to_dict() for story in stories], indent=2)
        self.stories_file.write_text(payload, encoding="utf-8")

    # -------------------- queries --------------------
    def list_stories(self) -> List[Story]:
        return self.load()

    def get_story(self, story_id: str) -> Optional[Story]:
        for story in self.load():
            if story.id == story_id:
                return story
        return None

    # -------------------- mutations --------------------
    def add_story(
        self,
        title: str,
        description: str,
        status: StoryStatus = StoryStatus.NEW,
        priority: StoryPriority = StoryPriority.MEDIUM,
        assignee: Optional[str] = None,
        points: Optional[Union[int, float]] = None,
    ) -> Story:
        """Append a new Unstarted story and persist it.

        The id, timestamps and progress state are always assigned here.
        """
        stories = self.load()
        now = utcnow()
        story = Story(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            status=StoryStatus(status),
            priority=StoryPriority(priority),
            progress_state=ProgressState.UNSTARTED,
            created_at=now,
            updated_at=now,
            assignee=assignee,
            points=points,
        )
        stories.append(story)
        self.save(stories)
        return story

    def edit_story(self, story_id: str, patch: StoryPatch) -> Optional[Story]:
        """Apply the supplied patch fields. ``updated_at`` is bumped even for an empty patch."""
        stories = self.load()
        story = _find(stories, story_id)
        if story is None:
            return None

        patch.apply(story)
        story.updated_at = utcnow()
        self.save(stories)
        return story

    def update_progress_state(
        self, story_id: str, progress_state: ProgressState
    ) -> Optional[Story]:
        stories = self.load()
        story = _find(stories, story_id)
        if story is None:
            return None

        story.progress_state = ProgressState(progress_state)
        story.updated_at = utcnow()
        self.save(stories)
        return story

    def mark_played(self, story_id: str, played: bool) -> Optional[Story]:
        """Legacy toggle. Unplaying always goes back to Unstarted, never Started."""
        state = ProgressState.PLAYED if played else ProgressState.UNSTARTED
        return self.update_progress_state(story_id, state)

    def reorder_story(self, story_id: str, new_position: int) -> Optional[Story]:
        """
        Move an Unstarted story to a new position among the Unstarted stories.

        Positions are zero-based and only count Unstarted stories. After a
        move the collection is rewritten as every Started/Played story (in
        their existing relative order) followed by the reordered Unstarted
        stories, so started work no longer interleaves with the backlog.

        Args:
            story_id (str): Story to move
            new_position (int): Target index among Unstarted stories

        Returns:
            Optional[Story]: The moved story, or None if no story has that id

        Raises:
            InvalidStoryStateError: if the story is not Unstarted
            InvalidPositionError: if new_position is out of range
        """
        stories = self.load()
        story = _find(stories, story_id)
        if story is None:
            return None

        if not story.is_unstarted:
            raise InvalidStoryStateError("Can only reorder stories in Unstarted state")

        unstarted = [s for s in stories if s.is_unstarted]
        fixed = [s for s in stories if not s.is_unstarted]

        current_position = next(
            i for i, s in enumerate(unstarted) if s.id == story_id
        )
        if new_position < 0 or new_position >= len(unstarted):
            raise InvalidPositionError(
                f"New position must be between 0 and {len(unstarted) - 1}"
            )

        if current_position == new_position:
            return story

        unstarted.pop(current_position)
        unstarted.insert(new_position, story)
        story.updated_at = utcnow()

        self.save(fixed + unstarted)
        return story


def _find(stories: List[Story], story_id: str) -> Optional[Story]:
    return next((s for s in stories if s.id == story_id), None)
