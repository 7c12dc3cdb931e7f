"""
Styled terminal output for the batch-engine commands

Status lines go to stdout; errors go to stderr so they survive when
stdout is redirected to a file.
"""
import click
from typing import Optional

LABEL_ICONS = {
    "Tasks": "📂",
    "Work function": "⚙️",
    "Concurrency": "🔢",
    "Retries": "🔁",
    "Model": "🤖",
    "Duration": "⏱",
    "Throughput": "⚡",
    "Latency": "📈",
    "Success rate": "✅",
    "Retry rate": "🔁",
    "Report": "📄",
    "Results": "📄",
}

# Checked in order against the lowercased label when there is no exact entry
KEYWORD_ICONS = (
    ("cost", "💰"),
    ("input", "📥"),
    ("output", "📤"),
    ("auxiliary", "🖼"),
    ("per task", "💰"),
    ("rate", "📊"),
    ("time", "⏱"),
)

DEFAULT_ICON = "•"


def label_icon(label: str) -> str:
    """Icon for an info label, falling back to keyword matches"""
    if label in LABEL_ICONS:
        return LABEL_ICONS[label]
    lowered = label.lower()
    for keyword, icon in KEYWORD_ICONS:
        if keyword in lowered:
            return icon
    return DEFAULT_ICON


def print_header(title: str, subtitle: Optional[str] = None) -> None:
    click.echo()
    click.secho(f"✨ {title}", fg="bright_cyan", bold=True)
    click.secho("─" * max(40, len(title) + 3), fg="cyan")
    if subtitle:
        click.secho(subtitle, fg="cyan", dim=True)


def print_info(label: str, value: str, color: str = "green") -> None:
    """
    Print one `icon label: value` line

    Args:
        label: What the value is (e.g. "Tasks", "Total cost")
        value: Already formatted value
        color: Color for the value
    """
    click.echo(f"{label_icon(label)} {label}: {click.style(value, fg=color)}")


def print_success(message: str) -> None:
    click.echo()
    click.secho(f"✓ {message}", fg="bright_green", bold=True)


def print_error(message: str, details: Optional[str] = None, tip: Optional[str] = None) -> None:
    """Print an error to stderr, with optional details and a hint on how to fix it"""
    click.echo(err=True)
    click.echo(f"{click.style('✗ Error:', fg='bright_red', bold=True)} {message}", err=True)
    if details:
        click.secho(f"  {details}", fg="red", dim=True, err=True)
    if tip:
        click.echo(f"{click.style('💡 Tip:', fg='bright_blue')} {tip}", err=True)


def print_warning(message: str) -> None:
    click.secho(f"⚠️  {message}", fg="yellow", bold=True)


def print_section(title: str) -> None:
    click.echo()
    click.secho(title, fg="bright_white", bold=True)
