#!/usr/bin/env python3
"""
Terminal Chat - Rich interface for working a case against the gatekeeper
Pick a case from the library, then ask, order tests and commit to a diagnosis
"""

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.prompt import Prompt
from rich.live import Live
from rich.table import Table
from rich import box

from typing import Optional

from dxsim.config import BASE_URL
from dxsim.client.library_client import LibraryClient, LibraryError
from dxsim.client.stream_consumer import StreamConsumer
from dxsim.core.datashapes import ActionType, Case, ConversationEntry, TurnOutcome

ROLE_STYLES = {
    'Dr.': 'bold cyan',
    'Case': 'bold white',
    'Patient': 'green',
    'Test Results': 'yellow',
    'Final Diagnosis': 'magenta',
    'Error': 'bold red',
}

ACTION_ALIASES = {
    'q': ActionType.QUESTION, 'question': ActionType.QUESTION,
    't': ActionType.TEST, 'test': ActionType.TEST,
    'd': ActionType.DIAGNOSIS, 'diagnosis': ActionType.DIAGNOSIS,
}


class TerminalChat:
    def __init__(self, base_url: str = BASE_URL, dataset: Optional[str] = None, debug_mode: bool = False):
        self.console = Console(force_terminal=True, legacy_windows=False)
        self.debug_mode = debug_mode
        self.dataset = dataset
        self.library = LibraryClient(base_url)
        self.consumer = StreamConsumer(base_url)
        self.action = ActionType.QUESTION
        self.cases = []
        self._live: Optional[Live] = None
        self.consumer.on_update = self._on_update

    # =========================================================================
    # RENDERING
    # =========================================================================

    def _entry_panel(self, entry: ConversationEntry) -> Panel:
        style = ROLE_STYLES.get(entry.role, 'white')
        title = entry.role
        if entry.role == 'Dr.' and entry.action:
            title = f"Dr. [{entry.action.value}]"
        return Panel(Text(entry.message), title=title, title_align='left', border_style=style)

    def _on_update(self, consumer: StreamConsumer):
        # Only the live stream area re-renders; finished entries are printed once
        if self._live is not None and consumer.stream is not None and consumer.stream.entry_index is not None:
            self._live.update(self._entry_panel(consumer.conversation[consumer.stream.entry_index]))

    def show_case(self, case: Case):
        header = f"{case.title}"
        if case.year:
            header += f" ({case.year})"
        self.console.print(Panel(Text(case.clinical_vignette), title=header, border_style="blue"))
        if self.debug_mode:
            self.console.print(f"[dim]case {case.id} doi {case.doi} session {self.consumer.session_id}[/dim]")

    def show_library(self):
        try:
            self.cases = self.library.list_cases(self.dataset)
        except LibraryError as e:
            self.console.print(f"[red]Failed to load cases: {e}[/red]")
            return

        table = Table(title="Case Library", box=box.SIMPLE)
        table.add_column("#", style="dim", width=4)
        table.add_column("Case")
        table.add_column("Year", width=6)
        table.add_column("Dataset", style="dim")
        for index, case in enumerate(self.cases, 1):
            table.add_row(str(index), case.display_title, str(case.year or ''), case.dataset or '')
        self.console.print(table)

    def show_help(self):
        help_table = Table(box=box.SIMPLE, show_header=False)
        help_table.add_column("Command", style="cyan")
        help_table.add_column("What it does")
        help_table.add_row("/cases", "List the case library")
        help_table.add_row("/case N|id", "Open case N from the last listing, or a case by id")
        help_table.add_row("/random", "Open a random case")
        help_table.add_row("/action q|t|d", "Switch between Question, Test and Diagnosis")
        help_table.add_row("/quit", "Leave")
        self.console.print(Panel(help_table, title="Commands", border_style="blue"))

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def open_case(self, case: Case):
        if self.consumer.select_case(case):
            self.show_case(case)
        else:
            self.console.print("[dim]Case already open[/dim]")

    def find_case(self, ref: str) -> Optional[Case]:
        """Listing index from the last /cases, else a case id."""
        if ref.isdigit() and 0 < int(ref) <= len(self.cases):
            return self.cases[int(ref) - 1]
        try:
            return self.library.get_case(ref, self.dataset)
        except LibraryError as e:
            self.console.print(f"[red]Failed to load cases: {e}[/red]")
            return None

    def handle_command(self, command: str) -> bool:
        """Returns False when the loop should stop."""
        parts = command.split()
        name = parts[0].lower()

        if name in ('/quit', '/exit'):
            return False
        if name == '/help':
            self.show_help()
        elif name == '/cases':
            self.show_library()
        elif name == '/case':
            if len(parts) < 2:
                self.console.print("[yellow]Usage: /case N (from /cases) or /case <case id>[/yellow]")
            else:
                case = self.find_case(parts[1])
                if case is None:
                    self.console.print(f"[yellow]No case {parts[1]}[/yellow]")
                else:
                    self.open_case(case)
        elif name == '/random':
            try:
                self.open_case(self.library.random_case())
            except LibraryError as e:
                self.console.print(f"[red]Failed to load random case: {e}[/red]")
        elif name == '/action':
            action = ACTION_ALIASES.get(parts[1].lower()) if len(parts) > 1 else None
            if action is None:
                self.console.print("[yellow]Usage: /action q|t|d[/yellow]")
            else:
                self.action = action
                self.console.print(f"[cyan]Action: {action.value}[/cyan]")
        else:
            self.console.print(f"[yellow]Unknown command {name}, try /help[/yellow]")
        return True

    def send(self, text: str):
        if self.consumer.current_case is None:
            self.console.print("[yellow]Open a case first (/cases, /case N or /random)[/yellow]")
            return

        before = len(self.consumer.conversation)
        with Live(Text("...", style="dim"), console=self.console, refresh_per_second=12, transient=True) as live:
            self._live = live
            try:
                result = self.consumer.send_message(text, self.action)
            finally:
                self._live = None

        # Print what the turn added, skipping the echo of the doctor's own line
        for entry in self.consumer.conversation[before:]:
            if entry.role != 'Dr.':
                self.console.print(self._entry_panel(entry))

        if self.debug_mode and result.outcome != TurnOutcome.COMPLETED:
            self.console.print(f"[dim]turn {result.outcome.value}: {result.error or ''}[/dim]")

    def run(self):
        self.console.print(Panel.fit(
            "DXSim - work the case, reach the diagnosis\n\n"
            "Commands: /cases /case N|id /random /action q|t|d /help /quit",
            title="Welcome",
            border_style="green"
        ))

        try:
            while True:
                prompt = f"[bold cyan]{self.action.value}[/bold cyan]"
                user_input = Prompt.ask(prompt).strip()
                if not user_input:
                    continue
                if user_input.startswith('/'):
                    if not self.handle_command(user_input):
                        break
                    continue
                self.send(user_input)
        except (KeyboardInterrupt, EOFError):
            self.console.print()
        finally:
            self.consumer.end_session()
            self.console.print("[bold yellow]Goodbye![/bold yellow]")


def main():
    """Run the terminal chat with optional arguments"""
    import argparse

    parser = argparse.ArgumentParser(description='DXSim terminal chat')
    parser.add_argument('--url', '-u', default=BASE_URL,
                        help='Base URL of the DXSim service')
    parser.add_argument('--dataset', default=None,
                        help='Only list cases from this dataset')
    parser.add_argument('--case', '-c', default=None,
                        help='Open this case id on start')
    parser.add_argument('--random', '-r', action='store_true',
                        help='Open a random case on start')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Show case ids, session id and turn outcomes')

    args = parser.parse_args()

    chat = TerminalChat(base_url=args.url, dataset=args.dataset, debug_mode=args.debug)
    try:
        if args.case:
            case = chat.library.get_case(args.case, args.dataset)
            if case is None:
                chat.console.print(f"[red]Case {args.case} not found[/red]")
            else:
                chat.open_case(case)
        elif args.random:
            chat.open_case(chat.library.random_case())
    except LibraryError as e:
        chat.console.print(f"[red]{e}[/red]")
    chat.run()


if __name__ == "__main__":
    main()
