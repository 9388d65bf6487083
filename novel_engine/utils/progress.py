from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeRemainingColumn
from typing import Optional

from ..events import EventKind, ProgressEvent


def create_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
    )


class ProgressReporter:
    """EventChannel listener that drives a rich progress bar, one step per chapter."""

    def __init__(self, progress: Progress, description: str = "Generating..."):
        self.progress = progress
        self.description = description
        self.task_id: Optional[int] = None

    def __call__(self, event: ProgressEvent):
        if self.task_id is None:
            self.task_id = self.progress.add_task(self.description, total=event.total_chapters or None)

        if event.kind == EventKind.USAGE:
            return
        if event.kind == EventKind.CHAPTER_FAILED:
            self.progress.console.print(f"[red]{event.operation}[/red]")
        elif event.kind == EventKind.CHAPTER_COMPLETED:
            self.progress.console.print(
                f"[green]{event.operation}[/green] "
                f"({event.words_generated} words so far, ${event.cost_so_far:.4f})"
            )

        done = round(event.overall_percentage / 100 * event.total_chapters) if event.total_chapters else 0
        label = event.operation if event.operation else self.description
        self.progress.update(self.task_id, completed=done, description=label)
