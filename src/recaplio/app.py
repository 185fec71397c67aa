# /recaplio/app.py
"""
Interactive reading-companion CLI.
Lets a reader pick a book and reading position, ask Lio questions, and rate
the answers so later responses adapt to them.
"""
import sys

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import IntPrompt, Prompt
from rich.table import Table

from .config import HISTORY_MAX_TURNS, LOCAL_MODEL_NAME, TIER_MODEL_NAMES, USE_API_LLM, console
from .errors import RecaplioError
from .models import ConversationTurn, FeedbackCategory, KnowledgeLens, RAGContext, ReadingMode, UserTier
from .observability import get_logger
from .pipeline import RagPipeline, build_pipeline

logger = get_logger(__name__)

FEEDBACK_COMMANDS = {
    "/helpful": FeedbackCategory.HELPFUL,
    "/long": FeedbackCategory.TOO_LONG,
    "/short": FeedbackCategory.TOO_SHORT,
    "/off": FeedbackCategory.OFF_TOPIC,
}


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    backend = "Groq API" if USE_API_LLM else f"Local Ollama ({LOCAL_MODEL_NAME})"
    console.print(Panel(
        "[bold magenta]Recaplio - Reading Companion[/bold magenta]",
        subtitle="[cyan]Ask Lio about the book you are reading[/cyan]",
        expand=False
    ))
    console.print(f"[green]Generation backend: {backend}[/green]")


def render_profile(pipeline: RagPipeline, user_id: str):
    summary = pipeline.get_profile(user_id).summary()
    table = Table(title=f"Learning profile: {user_id}")
    table.add_column("Signal", style="cyan")
    table.add_column("Value", style="green")
    for category in FeedbackCategory:
        table.add_row(category.value, f"{summary['counts'].get(category.value, 0):g}")
    table.add_row("verbosity bias", f"{summary['verbosityBias']:+.2f}")
    table.add_row("focus bias", f"{summary['focusBias']:.2f}")
    table.add_row("response style", summary["responseStyle"])
    table.add_row("satisfaction", f"{summary['satisfactionScore']:.2f}")
    table.add_row("top topics", ", ".join(summary["topTopics"]) or "-")
    console.print(table)


def parse_session_command(text: str):
    """Maps a typed line to ("feedback", category), ("profile", None), ("back", None) or ("ask", text)."""
    stripped = text.strip()
    lowered = stripped.lower()
    if lowered in FEEDBACK_COMMANDS:
        return "feedback", FEEDBACK_COMMANDS[lowered]
    if lowered == "/profile":
        return "profile", None
    if lowered in {"back", "/back"}:
        return "back", None
    return "ask", stripped


def prompt_reading_context(user_id: str) -> RAGContext:
    book_id = IntPrompt.ask("Book id")
    tier = Prompt.ask("Tier", choices=[t.value for t in UserTier], default=UserTier.FREE.value)
    mode = Prompt.ask("Reading mode", choices=[m.value for m in ReadingMode], default=ReadingMode.FICTION.value)
    lens = Prompt.ask("Knowledge lens", choices=[k.value for k in KnowledgeLens], default=KnowledgeLens.LITERARY.value)
    position = Prompt.ask("Current chunk (blank if unknown)", default="")
    return RAGContext(
        book_id=book_id,
        user_id=user_id,
        user_tier=UserTier(tier),
        reading_mode=ReadingMode(mode),
        knowledge_lens=KnowledgeLens(lens),
        current_chunk_index=int(position) if position.strip().isdigit() else None,
    )


def handle_reading_session(pipeline: RagPipeline, user_id: str):
    """Asks for the reading context, then enters the question loop."""
    try:
        context = prompt_reading_context(user_id)
    except ValueError as exc:
        console.print(f"[bold red]Invalid reading context: {exc}[/bold red]")
        return

    console.print(f"[green]Model: {TIER_MODEL_NAMES[context.user_tier.value] if USE_API_LLM else LOCAL_MODEL_NAME}[/green]")
    console.print(
        "\n[bold green]Reading session started.[/bold green] "
        "[italic]Rate the last answer with /helpful, /long, /short or /off; /profile shows your profile; 'back' returns.[/italic]"
    )
    last_message_id = None
    history: list[ConversationTurn] = []
    while True:
        line = Prompt.ask("[bold cyan]Ask Lio[/bold cyan]")
        action, payload = parse_session_command(line)
        if action == "back":
            break
        if action == "profile":
            render_profile(pipeline, user_id)
            continue
        if action == "feedback":
            if last_message_id is None:
                console.print("[yellow]Ask a question first, then rate the answer.[/yellow]")
                continue
            try:
                pipeline.record_feedback(user_id, last_message_id, payload)
            except RecaplioError as exc:
                console.print(f"[bold red]{exc.public_message}[/bold red]")
                continue
            console.print(f"[dim]Thanks, noted as {payload.value}.[/dim]")
            continue
        if not payload:
            continue

        try:
            with console.status("[bold cyan]Lio is reading...[/bold cyan]", spinner="dots"):
                answer = pipeline.answer(payload, context, history)
        except RecaplioError as exc:
            logger.warning("cli_query_failed", stage=exc.stage, error_type=type(exc).__name__)
            console.print(f"[bold red]{exc.public_message}[/bold red]")
            continue

        last_message_id = answer.message_id
        history += [ConversationTurn("user", payload), ConversationTurn("assistant", answer.response_text)]
        history = history[-HISTORY_MAX_TURNS:] if HISTORY_MAX_TURNS else []
        console.print(Panel(Markdown(answer.response_text), title="Lio", border_style="magenta"))
        if answer.passage_ordinals:
            chunks = ", ".join(str(o + 1) for o in answer.passage_ordinals)
            console.print(f"[dim]Passages used: chunks {chunks}[/dim]")


def handle_add_book(pipeline: RagPipeline, user_id: str):
    book_id = IntPrompt.ask("Book id to add to your library")
    grant = getattr(pipeline.access_policy, "grant", None)
    if not callable(grant):
        console.print("[yellow]This library backend is read-only.[/yellow]")
        return
    grant(user_id, book_id)
    chunks = pipeline.chunk_store.count_chunks(book_id)
    console.print(f"[green]Book {book_id} added ({chunks} indexed chunks).[/green]")


def main():
    """Main application loop."""
    display_welcome_banner()
    pipeline = build_pipeline()
    user_id = Prompt.ask("Your user id", default="reader")

    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Add a Book to My Library[/green]")
                console.print("[blue]2. Start Reading Session[/blue]")
                console.print("[cyan]3. View Learning Profile[/cyan]")
                console.print("[magenta]4. Decay Learning Profiles[/magenta]")
                console.print("[red]5. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4", "5"])

                if choice == "1":
                    handle_add_book(pipeline, user_id)
                elif choice == "2":
                    handle_reading_session(pipeline, user_id)
                elif choice == "3":
                    render_profile(pipeline, user_id)
                elif choice == "4":
                    factor = float(Prompt.ask("Decay factor in (0, 1]", default="0.9"))
                    try:
                        touched = pipeline.profile_store.decay(factor)
                    except ValueError as exc:
                        console.print(f"[bold red]{exc}[/bold red]")
                        continue
                    console.print(f"[green]Decayed {touched} profile rows.[/green]")
                elif choice == "5":
                    break
            except KeyboardInterrupt:
                break
    finally:
        pipeline.close()

    console.print("\n[bold magenta]Goodbye! Happy reading.[/bold magenta]")
    sys.exit(0)

if __name__ == "__main__":
    main()
