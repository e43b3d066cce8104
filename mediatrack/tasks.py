# mediatrack/tasks.py
from datetime import date
from typing import Any, Dict, List, Optional, Sequence
import logging

from mediatrack.models import Board, Section, Task, now_iso
from mediatrack.service import NotFoundError, SessionBound, ValidationError

logger = logging.getLogger(__name__)

TASK_STATUSES = ("todo", "in_progress", "done", "archived")
PRIORITIES = ("low", "medium", "high")
DEFAULT_SECTIONS = ("To Do", "In Progress", "Done")
MAX_TAGS = 20
MAX_TAG_LEN = 50

STARTER_BOARDS = (
    {"name": "Job Applications", "description": "Track your job search and application progress",
     "icon": "Briefcase", "color": "#3b82f6", "board_type": "job_tracker",
     "template_type": "job_tracker", "field_config": {"starter": True}},
    {"name": "Recipe Collection", "description": "Save and organize your favorite recipes",
     "icon": "ChefHat", "color": "#f59e0b", "board_type": "list",
     "template_type": "recipe", "field_config": {"starter": True}},
)

BOARD_FIELDS = ("name", "description", "icon", "color", "is_public", "board_type", "template_type",
                "field_config")
TASK_FIELDS = ("title", "description", "status", "priority", "due_date", "tags", "board_id", "section_id")

def _text(value: Any, label: str, max_len: int, required: bool = False) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{label} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be text")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{label} too long (max {max_len})")
    return value

def _order(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        order = int(value)
    except (TypeError, ValueError):
        raise ValidationError("display_order must be an integer")
    if order < 0:
        raise ValidationError("display_order must be >= 0")
    return order

def _check_task_fields(data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
    out = {k: v for k, v in data.items() if k in TASK_FIELDS}
    if creating or "title" in out:
        out["title"] = _text(out.get("title"), "task title", 500, required=True)
    if "description" in out:
        out["description"] = _text(out["description"], "task description", 5000)
    if "status" in out and out["status"] not in TASK_STATUSES:
        raise ValidationError(f"invalid status: {out['status']}")
    if out.get("priority") is not None and out["priority"] not in PRIORITIES:
        raise ValidationError(f"invalid priority: {out['priority']}")
    tags = out.get("tags")
    if tags is not None:
        if len(tags) > MAX_TAGS:
            raise ValidationError("too many tags")
        if any(not isinstance(t, str) or len(t) > MAX_TAG_LEN for t in tags):
            raise ValidationError(f"tags must be text of at most {MAX_TAG_LEN} characters")
    return out

class TaskService(SessionBound):
    """Boards, board sections and tasks of the signed-in user."""

    # ---- Boards ----
    def list_boards(self, with_stats: bool = True) -> List[Board]:
        uid = self.current_user_id()
        rows = self.repo.select("task_boards_with_stats" if with_stats else "task_boards",
                                filters=[("eq", "user_id", uid)],
                                order=[("display_order", False), ("created_at", True)])
        return [Board.from_row(r) for r in rows]

    def get_board(self, board_id: str) -> Board:
        uid = self.current_user_id()
        rows = self.repo.select("task_boards", filters=[("eq", "id", board_id), ("eq", "user_id", uid)])
        if not rows:
            raise NotFoundError("board not found")
        return Board.from_row(rows[0])

    def create_board(self, name: str, fields: Optional[Dict[str, Any]] = None,
                     with_default_sections: bool = True) -> Board:
        fields = fields or {}
        uid = self.current_user_id()
        name = _text(name, "board title", 200, required=True)
        description = _text(fields.get("description"), "board description", 1000)
        last = self.repo.select("task_boards", "display_order", [("eq", "user_id", uid)],
                                order=[("display_order", True)], limit=1)
        next_order = (last[0].get("display_order") or 0) + 1 if last else 0
        row = {k: v for k, v in fields.items() if k in BOARD_FIELDS}
        row.update(user_id=uid, name=name, description=description, display_order=next_order)
        board = Board.from_row(self.repo.insert("task_boards", row)[0])
        if with_default_sections and board.board_type == "kanban":
            self.repo.insert("task_board_sections", [
                {"board_id": board.id, "name": n, "display_order": i} for i, n in enumerate(DEFAULT_SECTIONS)
            ])
        logger.info("Created board id=%s name=%s", board.id, board.name)
        return board

    def update_board(self, board_id: str, fields: Dict[str, Any]) -> Board:
        self.get_board(board_id)
        values = {k: v for k, v in fields.items() if k in BOARD_FIELDS}
        if "name" in values:
            values["name"] = _text(values["name"], "board title", 200, required=True)
        if "description" in values:
            values["description"] = _text(values["description"], "board description", 1000)
        if not values:
            raise ValidationError("nothing to update")
        values["updated_at"] = now_iso()
        rows = self.repo.update("task_boards", values, [("eq", "id", board_id)])
        logger.info("Updated board id=%s", board_id)
        return Board.from_row(rows[0])

    def delete_board(self, board_id: str) -> None:
        self.get_board(board_id)
        self.repo.delete("tasks", [("eq", "board_id", board_id)])
        self.repo.delete("task_board_sections", [("eq", "board_id", board_id)])
        self.repo.delete("task_boards", [("eq", "id", board_id)])
        logger.info("Deleted board id=%s", board_id)

    def reorder_boards(self, board_ids: Sequence[str]) -> None:
        uid = self.current_user_id()
        for i, bid in enumerate(board_ids):
            self.repo.update("task_boards", {"display_order": i}, [("eq", "id", bid), ("eq", "user_id", uid)])

    def ensure_starter_boards(self) -> List[Board]:
        """Create the starter boards for a user who has none, then list all boards."""
        uid = self.current_user_id()
        if not self.repo.select("task_boards", "id", [("eq", "user_id", uid)], limit=1):
            for starter in STARTER_BOARDS:
                self.create_board(starter["name"], starter, with_default_sections=False)
            logger.info("Created starter boards for %s", uid)
        return self.list_boards()

    # ---- Sections ----
    def list_sections(self, board_id: str) -> List[Section]:
        self.get_board(board_id)
        rows = self.repo.select("task_board_sections", filters=[("eq", "board_id", board_id)],
                                order=[("display_order", False)])
        return [Section.from_row(r) for r in rows]

    def create_section(self, board_id: str, name: str, display_order: Optional[int] = None) -> Section:
        name = _text(name, "section title", 200, required=True)
        display_order = _order(display_order)
        if display_order is None:
            display_order = len(self.list_sections(board_id))
        else:
            self.get_board(board_id)
        row = self.repo.insert("task_board_sections",
                               {"board_id": board_id, "name": name, "display_order": display_order})[0]
        return Section.from_row(row)

    def _section(self, section_id: str) -> Section:
        rows = self.repo.select("task_board_sections", filters=[("eq", "id", section_id)])
        if not rows:
            raise NotFoundError("section not found")
        section = Section.from_row(rows[0])
        self.get_board(section.board_id)
        return section

    def update_section(self, section_id: str, name: Optional[str] = None,
                       display_order: Optional[int] = None) -> Section:
        self._section(section_id)
        values: Dict[str, Any] = {}
        if name is not None:
            values["name"] = _text(name, "section title", 200, required=True)
        display_order = _order(display_order)
        if display_order is not None:
            values["display_order"] = display_order
        if not values:
            raise ValidationError("nothing to update")
        rows = self.repo.update("task_board_sections", values, [("eq", "id", section_id)])
        return Section.from_row(rows[0])

    def delete_section(self, section_id: str) -> None:
        self._section(section_id)
        # tasks in the section fall back to the board without a section
        self.repo.update("tasks", {"section_id": None}, [("eq", "section_id", section_id)])
        self.repo.delete("task_board_sections", [("eq", "id", section_id)])

    def reorder_sections(self, board_id: str, section_ids: Sequence[str]) -> None:
        self.get_board(board_id)
        for i, sid in enumerate(section_ids):
            self.repo.update("task_board_sections", {"display_order": i},
                             [("eq", "id", sid), ("eq", "board_id", board_id)])

    # ---- Tasks ----
    def list_tasks(self, board_id: Optional[str] = None, status: Optional[str] = None,
                   priority: Optional[str] = None, tags: Optional[Sequence[str]] = None,
                   due_before: Optional[str] = None, due_after: Optional[str] = None,
                   unassigned: bool = False) -> List[Task]:
        uid = self.current_user_id()
        filters: List = [("eq", "user_id", uid)]
        if board_id:
            filters.append(("eq", "board_id", board_id))
        elif unassigned:
            filters.append(("is", "board_id", None))
        if status:
            if status not in TASK_STATUSES:
                raise ValidationError(f"invalid status: {status}")
            filters.append(("eq", "status", status))
        if priority:
            if priority not in PRIORITIES:
                raise ValidationError(f"invalid priority: {priority}")
            filters.append(("eq", "priority", priority))
        if tags:
            filters.append(("ov", "tags", list(tags)))
        if due_before:
            filters.append(("lte", "due_date", due_before))
        if due_after:
            filters.append(("gte", "due_date", due_after))
        rows = self.repo.select("tasks", filters=filters, order=[("display_order", False), ("created_at", True)])
        return [Task.from_row(r) for r in rows]

    def get_task(self, task_id: str) -> Task:
        uid = self.current_user_id()
        rows = self.repo.select("tasks", filters=[("eq", "id", task_id), ("eq", "user_id", uid)])
        if not rows:
            raise NotFoundError("task not found")
        return Task.from_row(rows[0])

    def create_task(self, data: Dict[str, Any]) -> Task:
        uid = self.current_user_id()
        row = _check_task_fields(data, creating=True)
        row.setdefault("status", "todo")
        if row.get("board_id"):
            self.get_board(row["board_id"])
        scope = [("eq", "user_id", uid)]
        if row.get("section_id"):
            scope.append(("eq", "section_id", row["section_id"]))
        elif row.get("board_id"):
            scope.append(("eq", "board_id", row["board_id"]))
        last = self.repo.select("tasks", "display_order", scope, order=[("display_order", True)], limit=1)
        row["display_order"] = (last[0].get("display_order") or 0) + 1 if last else 0
        row["user_id"] = uid
        task = Task.from_row(self.repo.insert("tasks", row)[0])
        logger.info("Created task id=%s title=%s", task.id, task.title)
        return task

    def update_task(self, task_id: str, data: Dict[str, Any]) -> Task:
        current = self.get_task(task_id)
        values = _check_task_fields(data, creating=False)
        if not values:
            raise ValidationError("nothing to update")
        if "status" in values and values["status"] != current.status:
            values["completed_at"] = now_iso() if values["status"] == "done" else None
            if values["status"] == "archived":
                values["archived_at"] = now_iso()
        values["updated_at"] = now_iso()
        rows = self.repo.update("tasks", values, [("eq", "id", task_id)])
        logger.info("Updated task id=%s", task_id)
        return Task.from_row(rows[0])

    def delete_task(self, task_id: str) -> None:
        self.get_task(task_id)
        self.repo.delete("tasks", [("eq", "id", task_id)])
        logger.info("Deleted task id=%s", task_id)

    def move_task(self, task_id: str, section_id: Optional[str], new_order: int) -> Task:
        self.get_task(task_id)
        if new_order < 0:
            raise ValidationError("display_order must be >= 0")
        if section_id:
            self._section(section_id)
        rows = self.repo.update("tasks", {"section_id": section_id, "display_order": new_order},
                                [("eq", "id", task_id)])
        return Task.from_row(rows[0])

    def reorder_tasks(self, task_ids: Sequence[str]) -> None:
        uid = self.current_user_id()
        for i, tid in enumerate(task_ids):
            self.repo.update("tasks", {"display_order": i}, [("eq", "id", tid), ("eq", "user_id", uid)])

    def toggle_task_status(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        new_status = "todo" if task.status == "done" else "done"
        return self.update_task(task_id, {"status": new_status})

    def archive_task(self, task_id: str) -> Task:
        return self.update_task(task_id, {"status": "archived"})

    def today_tasks(self, today: Optional[date] = None) -> List[Task]:
        """Open tasks due today or overdue, earliest first."""
        uid = self.current_user_id()
        cutoff = (today or date.today()).isoformat()
        # due dates may carry a time; anything on the cutoff day still counts
        rows = self.repo.select("tasks", filters=[
            ("eq", "user_id", uid), ("lte", "due_date", cutoff + "T23:59:59.999999"),
            ("in", "status", ["todo", "in_progress"]),
        ], order=[("due_date", False)])
        return [Task.from_row(r) for r in rows]

    def archived_tasks(self) -> List[Task]:
        uid = self.current_user_id()
        rows = self.repo.select("tasks", filters=[("eq", "user_id", uid), ("eq", "status", "archived")],
                                order=[("archived_at", True)])
        return [Task.from_row(r) for r in rows]
