import datetime
import functools
import inspect
import json
import logging
import os
from typing import Optional, Dict, Any, List, Literal, Union
import argparse
from fastmcp import FastMCP
import duckdb

from .models import ProgressState, Story, StoryPatch, StoryPriority, StoryStatus
from .storage import MalformedStoryError, StoryStore, StoryStoreError


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger("project_mcp")

StatusName = Literal["New", "In Progress", "In Review", "Done", "Blocked"]
PriorityName = Literal["Low", "Medium", "High", "Critical"]
ProgressStateName = Literal["Unstarted", "Started", "Played"]


def filter_stories(
    stories: List[Story],
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assignee: Optional[str] = None,
    played: Optional[bool] = None,
    progress_state: Optional[str] = None,
) -> List[Story]:
    """
    Filter stories by the list_user_stories criteria.

    ``progress_state`` takes precedence over the legacy ``played`` flag; the
    flag is only checked when no progress state is given.
    """
    if status:
        stories = [s for s in stories if s.status == status]
    if priority:
        stories = [s for s in stories if s.priority == priority]
    if assignee:
        stories = [s for s in stories if s.assignee == assignee]
    if progress_state is not None:
        stories = [s for s in stories if s.progress_state == progress_state]
    elif played is not None:
        stories = [s for s in stories if s.played == played]
    return stories


def create_logging_tool_decorator(original_decorator, log_callback):
    """
    Wrap the FastMCP tool decorator so every call is reported to log_callback.

    Args:
        original_decorator: The original FastMCP tool decorator
        log_callback: Called with (tool_name, args_dict, response)

    Returns:
        A decorator with the same call signature as the original
    """

    def tool_decorator_with_logging(*args, **kwargs):
        wrapped_decorator = original_decorator(*args, **kwargs)

        def wrapper(func):
            @functools.wraps(func)  # FastMCP reads the signature through __wrapped__
            async def logged_func(*func_args, **func_kwargs):
                args_dict = {}
                if func_args:
                    param_names = list(inspect.signature(func).parameters.keys())
                    args_dict.update(zip(param_names, func_args))
                args_dict.update(func_kwargs)

                response = await func(*func_args, **func_kwargs)
                log_callback(func.__name__, args_dict, response)
                return response

            return wrapped_decorator(logged_func)

        return wrapper

    return tool_decorator_with_logging


class ProjectManagementServer:
    """
    MCP server exposing a user story tracker.

    Stories are kept by a StoryStore in a single JSON file inside the data
    directory. The tools validate arguments, apply list filters, and turn
    missing stories or rejected operations into ``{"error": ...}`` payloads.

    Tools:
    - add_user_story: create an Unstarted story
    - list_user_stories: list stories, optionally filtered
    - edit_user_story: change only the supplied fields
    - update_story_progress_state: move between Unstarted, Started and Played
    - mark_story_played: legacy played/unplayed toggle
    - reorder_story: move an Unstarted story among the Unstarted stories

    Attributes:
        mcp (FastMCP): The MCP server instance holding the tool registrations
        store (StoryStore): Story persistence
        usage_stats_enabled (bool): Whether tool calls are recorded in DuckDB
    """

    def __init__(self, data_dir: Optional[str] = None):
        self.mcp = FastMCP("project-management")
        self.store = StoryStore(data_dir)

        self.usage_stats_enabled = os.getenv("DUCKDB_USAGE_STATS", "0").lower() in [
            "1",
            "true",
            "yes",
        ]
        if self.usage_stats_enabled:
            self.stats_db_path = os.getenv(
                "STATS_DB_PATH", "project_mcp_stats.duckdb"
            )
            self._init_stats_db()
            self.mcp.tool = create_logging_tool_decorator(
                self.mcp.tool, self._log_tool_usage
            )
            logger.debug({"msg": f"Recording tool usage in {self.stats_db_path}"})

        self.register_tools()

    def _init_stats_db(self):
        """Create the tool_usage table if it does not exist yet."""
        try:
            with duckdb.connect(self.stats_db_path) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS tool_usage (
                        tool_name VARCHAR,
                        args JSON,
                        response JSON,
                        timestamp TIMESTAMP,
                        data_dir VARCHAR,
                        request_id VARCHAR
                    )
                """)
        except Exception as e:
            logger.debug({"msg": f"Error initializing stats database: {str(e)}"})

    def _log_tool_usage(self, tool_name: str, args: dict, response=None):
        """
        Record one tool call in DuckDB. Failures are logged and otherwise ignored.

        Args:
            tool_name (str): Name of the tool being used
            args (dict): Arguments passed to the tool
            response (dict, optional): Response returned by the tool
        """
        if not self.usage_stats_enabled:
            return

        request_id = None
        try:
            request_id = getattr(
                self.mcp._mcp_server.request_context, "request_id", None
            )
        except (AttributeError, LookupError):
            pass

        try:
            args_json = json.dumps(args, default=str)
            response_json = (
                json.dumps(response, default=str) if response is not None else None
            )
            with duckdb.connect(self.stats_db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO tool_usage (tool_name, args, response, timestamp, data_dir, request_id)
                    VALUES (?, ?, ?, ?, ?, ?)
                """,
                    (
                        tool_name,
                        args_json,
                        response_json,
                        datetime.datetime.now(),
                        str(self.store.data_dir),
                        request_id,
                    ),
                )
        except Exception as e:
            logger.debug({"msg": f"Error logging tool usage: {str(e)}"})

    def register_tools(self):
        @self.mcp.tool()
        async def add_user_story(
            title: str,
            description: str,
            status: StatusName = "New",
            priority: PriorityName = "Medium",
            assignee: Optional[str] = None,
            points: Optional[float] = None,
        ) -> Dict[str, Any]:
            """
            Adds a new user story to the project management system.

            A user story represents a feature or functionality from the user's
            perspective. New stories start in the Unstarted progress state.

            Returns:
                dict: status, message, story
            """
            try:
                story = self.store.add_story(
                    title=title,
                    description=description,
                    status=StoryStatus(status),
                    priority=StoryPriority(priority),
                    assignee=assignee,
                    points=_normalize_points(points),
                )
            except ValueError as e:
                return {"error": f"Invalid arguments for add_user_story: {str(e)}"}
            except (OSError, MalformedStoryError) as e:
                return {"error": f"Error accessing story storage: {str(e)}"}

            return {
                "status": "success",
                "message": f"User story created successfully with ID: {story.id}",
                "story": story.to_dict(),
            }

        @self.mcp.tool()
        async def list_user_stories(
            status: Optional[StatusName] = None,
            priority: Optional[PriorityName] = None,
            assignee: Optional[str] = None,
            played: Optional[bool] = None,
            progress_state: Optional[ProgressStateName] = None,
        ) -> Dict[str, Any]:
            """
            Lists user stories with optional filtering.

            Returns all user stories if no filters are provided. Use
            progress_state to filter by Unstarted, Started or Played, or
            played=true/false for backward compatibility. progress_state wins
            when both are given.

            Returns:
                dict: status, stories, total
            """
            try:
                stories = self.store.list_stories()
            except (OSError, MalformedStoryError) as e:
                return {"error": f"Error accessing story storage: {str(e)}"}

            stories = filter_stories(
                stories,
                status=status,
                priority=priority,
                assignee=assignee,
                played=played,
                progress_state=progress_state,
            )
            result = {
                "status": "success",
                "stories": [story.to_dict() for story in stories],
                "total": len(stories),
            }
            if not stories:
                result["message"] = "No user stories found matching the criteria"
            return result

        @self.mcp.tool()
        async def mark_story_played(story_id: str, played: bool) -> Dict[str, Any]:
            """
            Marks a user story as played or unplayed.

            Set played=true to mark as played, played=false to mark as
            unplayed. Unplayed stories go back to the Unstarted state.
            """
            try:
                story = self.store.mark_played(story_id, played)
            except (OSError, MalformedStoryError) as e:
                return {"error": f"Error accessing story storage: {str(e)}"}
            if story is None:
                return {"error": f"User story with ID {story_id} not found"}

            return {
                "status": "success",
                "message": f"User story '{story.title}' has been marked as {'played' if played else 'unplayed'}",
                "story": story.to_dict(),
            }

        @self.mcp.tool()
        async def update_story_progress_state(
            story_id: str, progress_state: ProgressStateName
        ) -> Dict[str, Any]:
            """
            Updates a user story's progress state to Unstarted, Started, or Played.

            This gives finer control over a story's lifecycle than the played flag.
            """
            try:
                state = ProgressState(progress_state)
            except ValueError as e:
                return {
                    "error": f"Invalid arguments for update_story_progress_state: {str(e)}"
                }
            try:
                story = self.store.update_progress_state(story_id, state)
            except (OSError, MalformedStoryError) as e:
                return {"error": f"Error accessing story storage: {str(e)}"}
            if story is None:
                return {"error": f"User story with ID {story_id} not found"}

            return {
                "status": "success",
                "message": f"User story '{story.title}' progress state has been updated to {state.value}",
                "story": story.to_dict(),
            }

        @self.mcp.tool()
        async def reorder_story(story_id: str, new_position: int) -> Dict[str, Any]:
            """
            Reorders an unstarted user story to a new position.

            Only stories in the Unstarted state can be reordered. Position is
            zero-based and counts unstarted stories only. Started and played
            stories are listed ahead of the unstarted ones afterwards.
            """
            try:
                story = self.store.reorder_story(story_id, new_position)
            except StoryStoreError as e:
                return {"error": f"Failed to reorder story: {str(e)}"}
            except OSError as e:
                return {"error": f"Error accessing story storage: {str(e)}"}
            if story is None:
                return {
                    "error": f"Failed to reorder story: User story with ID {story_id} not found"
                }

            return {
                "status": "success",
                "message": f"User story '{story.title}' has been moved to position {new_position}",
                "story": story.to_dict(),
            }

        @self.mcp.tool()
        async def edit_user_story(
            story_id: str,
            title: Optional[str] = None,
            description: Optional[str] = None,
            status: Optional[StatusName] = None,
            priority: Optional[PriorityName] = None,
            assignee: Optional[str] = None,
            points: Optional[float] = None,
        ) -> Dict[str, Any]:
            """
            Edits an existing user story.

            Provide the story_id and any fields you want to update. Only the
            provided fields are changed; the progress state is left alone.

            Returns:
                dict: status, message, updated_fields, story
            """
            try:
                patch = StoryPatch(
                    title=title,
                    description=description,
                    status=StoryStatus(status) if status is not None else None,
                    priority=StoryPriority(priority) if priority is not None else None,
                    assignee=assignee,
                    points=_normalize_points(points),
                )
            except ValueError as e:
                return {"error": f"Invalid arguments for edit_user_story: {str(e)}"}

            try:
                story = self.store.edit_story(story_id, patch)
            except (OSError, MalformedStoryError) as e:
                return {"error": f"Error accessing story storage: {str(e)}"}
            if story is None:
                return {"error": f"User story with ID {story_id} not found"}

            updated_fields = patch.fields()
            if updated_fields:
                summary = f"Updated fields: {', '.join(updated_fields)}"
            else:
                summary = "No fields were changed"
            return {
                "status": "success",
                "message": f"User story '{story.title}' has been updated. {summary}",
                "updated_fields": updated_fields,
                "story": story.to_dict(),
            }

    def run(self, transport="stdio", **transport_kwargs):
        """Run the MCP server."""
        self.mcp.run(transport=transport, **transport_kwargs)


def _normalize_points(points: Optional[float]) -> Optional[Union[int, float]]:
    # JSON schema numbers arrive as floats; keep whole estimates as ints
    if points is not None and float(points).is_integer():
        return int(points)
    return points


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Project Management MCP Server")
    parser.add_argument(
        "-t",
        "--transport",
        default="stdio",
        choices=["stdio", "http", "streamable-http"],
        help="Transport type",
    )
    parser.add_argument(
        "-d",
        "--data-dir",
        "--dataDir",
        dest="data_dir",
        default=None,
        help="Path to data directory (default: .project-mcp-data)",
    )
    parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (for HTTP transport)"
    )
    parser.add_argument(
        "--port", type=int, default=8001, help="Port to bind to (for HTTP transport)"
    )
    parser.add_argument(
        "--path", default="/mcp", help="Path for HTTP endpoint (for HTTP transport)"
    )
    return parser


def main(argv=None):
    """Entry point for the ``project-mcp`` command."""
    args = build_parser().parse_args(argv)

    host = os.environ.get("FASTMCP_SERVER_HOST", args.host)
    port = int(os.environ.get("FASTMCP_SERVER_PORT", args.port))
    path = os.environ.get("FASTMCP_SERVER_PATH", args.path)
    transport = os.environ.get("FASTMCP_SERVER_TRANSPORT", args.transport)

    # Normalize transport name for FastMCP
    if transport in ["http", "streamable-http"]:
        transport = "streamable-http"

    server = ProjectManagementServer(data_dir=args.data_dir)
    logger.info(f"Project Management Server running with {transport} transport")
    if transport == "streamable-http":
        server.run(transport=transport, host=host, port=port, path=path)
    else:
        server.run(transport=transport)


if __name__ == "__main__":
    main()
