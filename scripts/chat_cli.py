#!/usr/bin/env python3
"""Interactive chat CLI for the agent runtime HTTP API."""

import json
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table


class ChatCLI:
    """Interactive chat interface that streams agent replies."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.conversation_id: str | None = None
        self.agent_mode = False
        self.console = Console()
        self.client = httpx.Client(timeout=httpx.Timeout(300.0, connect=10.0))

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Lumi Agent Runtime - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with your agents.\n"
                "Commands: /help, /agents, /new, /agent-mode, /stop, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]Connected to agent runtime[/green]\n")
        if not self._new_conversation():
            return

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                    continue
                elif command == "/agents":
                    self._show_agents()
                    continue
                elif command == "/new":
                    self._new_conversation()
                    continue
                elif command == "/agent-mode":
                    self.agent_mode = not self.agent_mode
                    self.console.print(f"[yellow]Agent mode {'on' if self.agent_mode else 'off'}[/yellow]")
                    continue
                elif command == "/stop":
                    self._stop()
                    continue
                elif command == "":
                    continue

                self._stream_message(user_input)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _agents(self) -> list[dict]:
        response = self.client.get(f"{self.base_url}/agents")
        response.raise_for_status()
        return response.json()

    def _new_conversation(self) -> bool:
        """Create a conversation with every agent, creating a default agent if none exist."""
        agents = self._agents()
        if not agents:
            provider = Prompt.ask(
                "No agents yet. Provider", choices=["openai", "anthropic", "gemini", "ollama"], default="anthropic"
            )
            model = Prompt.ask("Model", default="claude-sonnet-4-6" if provider == "anthropic" else "")
            response = self.client.post(
                f"{self.base_url}/agents",
                json={"name": "Lumi", "configuration": {"provider": provider, "model": model}},
            )
            if response.status_code != 201:
                self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
                return False
            agents = [response.json()]

        response = self.client.post(
            f"{self.base_url}/conversations", json={"participant_ids": [agent["id"] for agent in agents]}
        )
        if response.status_code != 201:
            self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
            return False
        self.conversation_id = response.json()["id"]
        names = ", ".join(agent["name"] for agent in agents)
        self.console.print(f"[yellow]New conversation with {names}[/yellow]")
        return True

    def _stream_message(self, message: str) -> None:
        """Send a message and render events as they arrive."""
        payload = {"message": message, "agent_mode": self.agent_mode}
        url = f"{self.base_url}/conversations/{self.conversation_id}/messages/stream"
        try:
            with self.client.stream("POST", url, json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
                    return
                for line in response.iter_lines():
                    if line.startswith("data: "):
                        self._render_event(json.loads(line[len("data: ") :]))
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")

    def _render_event(self, event: dict) -> None:
        match event.get("type"):
            case "message_started":
                self.console.print(f"[dim]{event.get('agent_name')} is thinking...[/dim]")
            case "tool_call":
                self.console.print(f"[dim]  → {event.get('tool_name')} {event.get('tool_arguments', {})}[/dim]")
            case "tool_result":
                marker = "[green]✓[/green]" if event.get("success") else "[red]✗[/red]"
                self.console.print(f"  {marker} [dim]{(event.get('content') or '')[:120]}[/dim]")
            case "message_completed":
                self._display_response(event)

    def _display_response(self, event: dict) -> None:
        """Display an agent reply with nice formatting."""
        style = "red" if event.get("is_error") else "green"
        self.console.print(
            Panel(
                Markdown(event.get("content") or "No response"),
                title=f"[bold {style}]{event.get('agent_name', 'Agent')}[/bold {style}]",
                border_style=style,
                padding=(1, 2),
            )
        )

    def _stop(self) -> None:
        response = self.client.post(f"{self.base_url}/conversations/{self.conversation_id}/stop")
        stopped = response.status_code == 200 and response.json().get("stopped")
        self.console.print("[yellow]Stop requested[/yellow]" if stopped else "[dim]Nothing is running[/dim]")

    def _show_agents(self) -> None:
        table = Table(title="Agents")
        table.add_column("Name")
        table.add_column("Provider")
        table.add_column("Model")
        for agent in self._agents():
            configuration = agent["configuration"]
            table.add_row(agent["name"], configuration["provider"], configuration["model"])
        self.console.print(table)

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /agents - List configured agents
• /new - Start a new conversation with every agent
• /agent-mode - Toggle agent mode (all tools, longer runs)
• /stop - Stop the reply in progress
• /quit or /exit - Exit the chat

[bold]Group conversations:[/bold]
Mention an agent with @Name to address it directly; agents hand off to each other the same way.
        """
        self.console.print(Panel(help_text, title="[blue]Help[/blue]", border_style="blue"))


def main() -> None:
    """Main entry point."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    cli = ChatCLI(base_url)
    cli.start()


if __name__ == "__main__":
    main()
