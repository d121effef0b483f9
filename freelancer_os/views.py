"""
Projections behind the feature pages: filters, statistics and board columns.

Everything here works on record lists obtained from collections; nothing
touches the store directly. Soft references (``client_id``, ``project_id``)
are resolved with a fallback label instead of failing.
"""

from __future__ import annotations

import datetime as dt
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, get_args

from freelancer_os.errors import InvalidRecord
from freelancer_os.schemas import (
    Client,
    ClientStatus,
    Finance,
    Goal,
    Invoice,
    InvoiceStatus,
    Project,
    ProjectStatus,
    Resource,
    ResourceType,
    Task,
    TaskStatus,
)
from freelancer_os.sync import CollectionSync

UNKNOWN_CLIENT = "Unknown Client"
NO_PROJECT = "No Project"

TASK_FILTERS = ("all", "today", "overdue", "high-priority")
FINANCE_FILTERS = ("all", "income", "expense", "this-month", "last-month")
GOAL_FILTERS = ("all", "work", "personal", "financial", "active", "completed", "paused")
INVOICE_FILTERS = ("all", "draft", "sent", "paid", "overdue")
RESOURCE_FILTERS = ("all", "tool", "article", "video")


def _find(records: Iterable, record_id: Optional[str]):
    if not record_id:
        return None
    for record in records:
        if record.id == record_id:
            return record
    return None


def client_name(clients: Iterable[Client], client_id: Optional[str]) -> str:
    client = _find(clients, client_id)
    return client.name if client else UNKNOWN_CLIENT


def project_name(projects: Iterable[Project], project_id: Optional[str]) -> str:
    project = _find(projects, project_id)
    return project.name if project else NO_PROJECT


def progress_percent(value: int, maximum: int) -> int:
    """Whole percentage, rounding halves up; 0 when there is nothing to count."""
    if maximum <= 0:
        return 0
    return math.floor(value / maximum * 100 + 0.5)


def _count_by(records: Iterable, attribute: str, keys: Sequence[str]) -> dict[str, int]:
    counts = Counter(getattr(record, attribute) for record in records)
    return {key: counts.get(key, 0) for key in keys}


def _same_month(day: dt.date, reference: dt.date) -> bool:
    return day.year == reference.year and day.month == reference.month


def _previous_month(reference: dt.date) -> dt.date:
    return reference.replace(day=1) - dt.timedelta(days=1)


def _week_bounds(today: dt.date) -> tuple[dt.date, dt.date]:
    """Sunday-to-Saturday week containing ``today``."""
    start = today - dt.timedelta(days=(today.weekday() + 1) % 7)
    return start, start + dt.timedelta(days=6)


def move_card(collection: CollectionSync, record_id: str, status: str) -> None:
    """Drag-and-drop between board columns: a single status update."""
    allowed = get_args(collection.model.model_fields["status"].annotation)
    if status not in allowed:
        raise InvalidRecord(f"Invalid status {status!r}; expected one of {allowed}")
    collection.update_item(record_id, status=status)


# Clients


def filter_clients(
    clients: Iterable[Client], search: str = "", status: str = "all"
) -> list[Client]:
    term = search.strip().lower()
    results = []
    for client in clients:
        matches_search = (
            not term or term in client.name.lower() or term in client.company.lower()
        )
        matches_status = status == "all" or client.status == status
        if matches_search and matches_status:
            results.append(client)
    return results


def client_counts(clients: Iterable[Client]) -> dict[str, int]:
    return _count_by(clients, "status", get_args(ClientStatus))


# Projects


@dataclass
class ProjectSummary:
    counts: dict[str, int]
    total_budget: float


def project_summary(projects: Sequence[Project]) -> ProjectSummary:
    return ProjectSummary(
        counts=_count_by(projects, "status", get_args(ProjectStatus)),
        total_budget=sum(project.budget for project in projects),
    )


def project_board(projects: Iterable[Project]) -> dict[str, list[Project]]:
    columns: dict[str, list[Project]] = {status: [] for status in get_args(ProjectStatus)}
    for project in projects:
        columns[project.status].append(project)
    return columns


# Tasks


def filter_tasks(
    tasks: Iterable[Task], kind: str = "all", today: Optional[dt.date] = None
) -> list[Task]:
    if kind not in TASK_FILTERS:
        raise ValueError(f"Unknown task filter {kind!r}")
    today = today or dt.date.today()
    if kind == "today":
        return [task for task in tasks if task.deadline == today]
    if kind == "overdue":
        return [task for task in tasks if task.deadline < today and task.status != "Done"]
    if kind == "high-priority":
        return [task for task in tasks if task.priority == "High"]
    return list(tasks)


def task_counts(tasks: Iterable[Task]) -> dict[str, int]:
    return _count_by(tasks, "status", get_args(TaskStatus))


def task_board(tasks: Iterable[Task]) -> dict[str, list[Task]]:
    columns: dict[str, list[Task]] = {status: [] for status in get_args(TaskStatus)}
    for task in tasks:
        columns[task.status].append(task)
    return columns


# Finances


@dataclass
class FinanceStats:
    total_income: float
    total_expense: float
    net_income: float
    monthly_income: float
    monthly_expense: float
    monthly_net: float


def finance_stats(
    finances: Sequence[Finance], today: Optional[dt.date] = None
) -> FinanceStats:
    today = today or dt.date.today()
    total_income = sum(f.amount for f in finances if f.type == "Income")
    total_expense = sum(f.amount for f in finances if f.type == "Expense")
    monthly_income = sum(
        f.amount for f in finances if f.type == "Income" and _same_month(f.date, today)
    )
    monthly_expense = sum(
        f.amount for f in finances if f.type == "Expense" and _same_month(f.date, today)
    )
    return FinanceStats(
        total_income=total_income,
        total_expense=total_expense,
        net_income=total_income - total_expense,
        monthly_income=monthly_income,
        monthly_expense=monthly_expense,
        monthly_net=monthly_income - monthly_expense,
    )


def filter_finances(
    finances: Iterable[Finance], kind: str = "all", today: Optional[dt.date] = None
) -> list[Finance]:
    if kind not in FINANCE_FILTERS:
        raise ValueError(f"Unknown finance filter {kind!r}")
    today = today or dt.date.today()
    if kind == "income":
        return [f for f in finances if f.type == "Income"]
    if kind == "expense":
        return [f for f in finances if f.type == "Expense"]
    if kind == "this-month":
        return [f for f in finances if _same_month(f.date, today)]
    if kind == "last-month":
        last_month = _previous_month(today)
        return [f for f in finances if _same_month(f.date, last_month)]
    return list(finances)


@dataclass
class FinanceRow:
    record: Finance
    client_name: str
    project_name: str


def finance_rows(
    finances: Iterable[Finance],
    clients: Sequence[Client],
    projects: Sequence[Project],
) -> list[FinanceRow]:
    """Join finance records with their client and project names."""
    return [
        FinanceRow(
            record=finance,
            client_name=client_name(clients, finance.client_id),
            project_name=project_name(projects, finance.project_id),
        )
        for finance in finances
    ]


# Goals


@dataclass
class GoalStats:
    total: int
    completed: int
    active: int
    average_progress: int
    by_category: dict[str, int] = field(default_factory=dict)


def filter_goals(goals: Iterable[Goal], kind: str = "all") -> list[Goal]:
    if kind not in GOAL_FILTERS:
        raise ValueError(f"Unknown goal filter {kind!r}")
    if kind in ("work", "personal", "financial"):
        return [goal for goal in goals if goal.category.lower() == kind]
    if kind in ("active", "completed", "paused"):
        return [goal for goal in goals if goal.status.lower() == kind]
    return list(goals)


def goal_stats(goals: Sequence[Goal]) -> GoalStats:
    total = len(goals)
    average = (
        math.floor(sum(goal.progress for goal in goals) / total + 0.5) if total else 0
    )
    return GoalStats(
        total=total,
        completed=sum(1 for goal in goals if goal.status == "Completed"),
        active=sum(1 for goal in goals if goal.status == "Active"),
        average_progress=average,
        by_category=_count_by(goals, "category", ("Work", "Personal", "Financial")),
    )


# Invoices


def filter_invoices(invoices: Iterable[Invoice], kind: str = "all") -> list[Invoice]:
    if kind not in INVOICE_FILTERS:
        raise ValueError(f"Unknown invoice filter {kind!r}")
    if kind == "all":
        return list(invoices)
    return [invoice for invoice in invoices if invoice.status.lower() == kind]


def invoice_counts(invoices: Iterable[Invoice]) -> dict[str, int]:
    return _count_by(invoices, "status", get_args(InvoiceStatus))


# Resources


@dataclass
class ResourceStats:
    total: int
    counts: dict[str, int]
    categories: list[str]


def filter_resources(
    resources: Iterable[Resource], kind: str = "all", search: str = ""
) -> list[Resource]:
    if kind not in RESOURCE_FILTERS:
        raise ValueError(f"Unknown resource filter {kind!r}")
    results = list(resources)
    if kind != "all":
        results = [r for r in results if r.type.lower() == kind]
    term = search.strip().lower()
    if term:
        results = [
            r
            for r in results
            if term in r.name.lower()
            or term in r.category.lower()
            or term in r.notes.lower()
        ]
    return results


def resource_stats(resources: Sequence[Resource]) -> ResourceStats:
    categories: list[str] = []
    for resource in resources:
        if resource.category and resource.category not in categories:
            categories.append(resource.category)
    return ResourceStats(
        total=len(resources),
        counts=_count_by(resources, "type", get_args(ResourceType)),
        categories=categories,
    )


# Dashboard


@dataclass
class ProgressBar:
    label: str
    value: int
    max: int
    percent: int


@dataclass
class Dashboard:
    active_clients: int
    active_projects: int
    completed_tasks: int
    total_tasks: int
    monthly_income: float
    completed_goals: int
    todays_tasks: list[Task]
    task_progress: list[ProgressBar]
    goal_progress: list[ProgressBar]


def _bar(label: str, value: int, maximum: int) -> ProgressBar:
    return ProgressBar(
        label=label, value=value, max=maximum, percent=progress_percent(value, maximum)
    )


def dashboard(
    clients: Sequence[Client],
    projects: Sequence[Project],
    tasks: Sequence[Task],
    finances: Sequence[Finance],
    goals: Sequence[Goal],
    today: Optional[dt.date] = None,
) -> Dashboard:
    today = today or dt.date.today()
    week_start, week_end = _week_bounds(today)
    done = [task for task in tasks if task.status == "Done"]
    high = [task for task in tasks if task.priority == "High"]
    this_week = [task for task in tasks if week_start <= task.deadline <= week_end]
    work_goals = [goal for goal in goals if goal.category == "Work"]
    financial_goals = [goal for goal in goals if goal.category == "Financial"]

    def _completed(items: Iterable) -> int:
        return sum(1 for item in items if item.status in ("Done", "Completed"))

    return Dashboard(
        active_clients=sum(1 for client in clients if client.status == "Active"),
        active_projects=sum(1 for project in projects if project.status != "Done"),
        completed_tasks=len(done),
        total_tasks=len(tasks),
        monthly_income=finance_stats(finances, today).monthly_income,
        completed_goals=sum(1 for goal in goals if goal.status == "Completed"),
        todays_tasks=filter_tasks(tasks, "today", today),
        task_progress=[
            _bar("Overall Completion", len(done), len(tasks)),
            _bar("High Priority Tasks", _completed(high), len(high)),
            _bar("This Week's Tasks", _completed(this_week), len(this_week)),
        ],
        goal_progress=[
            _bar("Completed Goals", _completed(goals), len(goals)),
            _bar("Work Goals", _completed(work_goals), len(work_goals)),
            _bar("Financial Goals", _completed(financial_goals), len(financial_goals)),
        ],
    )
