"""Command executor for /help, /models, /model, /session, /agents, /agent, /health."""

from __future__ import annotations

from opencode_feishu.core.router import Command
from opencode_feishu.core.session import ConversationIdentity, SessionDirectory
from opencode_feishu.errors import NotFoundError, TransportError
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.models import InboundEvent
from opencode_feishu.opencode.client import AgentBackend

logger = get_logger(__name__)

HELP_TEXT = "\n".join(
    [
        "OpenCode Feishu assistant",
        "",
        "Commands:",
        "/help - show this help",
        "/models [keyword] - list or search available models",
        "/model <provider/model> - set the model for this conversation",
        "/session list - list all sessions",
        "/session new - create or recover this conversation's session",
        "/session switch <id> - switch to a session",
        "/session delete <id> - delete a session",
        "/session info - show the current session",
        "/agents - list available agents",
        "/agent [name] - show or set the agent for this conversation",
        "/health - check the OpenCode server",
        "",
        "Send any other message to talk to the agent.",
    ]
)
SESSION_USAGE = "Sub-commands: list | new | switch <id> | delete <id> | info"


class CommandExecutor:
    """Executes parsed commands and returns the reply text."""

    def __init__(self, backend: AgentBackend, directory: SessionDirectory):
        self._backend = backend
        self._directory = directory

    async def run(self, command: Command, event: InboundEvent) -> str:
        identity = ConversationIdentity.from_event(event)
        logger.info("command_received", command=command.name, session_key=identity.session_key)
        match command.name:
            case "help":
                return HELP_TEXT
            case "models":
                return await self._models(command.args[0] if command.args else "")
            case "model":
                return self._model(identity, command.args)
            case "session":
                return await self._session(identity, command.args)
            case "agents":
                return await self._agents()
            case "agent":
                return await self._agent(identity, command.args)
            case "health":
                return await self._health()
            case _:
                return f"Unknown command: /{command.name}. Send /help for usage."

    async def _models(self, keyword: str) -> str:
        kw = keyword.lower()
        lines: list[str] = []
        for provider in await self._backend.list_providers():
            provider_match = kw in provider.id.lower() or kw in provider.name.lower()
            matched = [
                m
                for m in provider.models
                if not kw or provider_match or kw in m.id.lower() or kw in m.name.lower()
            ]
            if not matched:
                continue
            lines.append(f"📦 [{provider.name or provider.id}]")
            lines.extend(f"  - {provider.id}/{m.id}: {m.name or m.id}" for m in matched)
            lines.append("")

        if not lines:
            return f'No models matching "{keyword}"' if keyword else "No models available"
        return "Available models:\n\n" + "\n".join(lines).strip()

    def _model(self, identity: ConversationIdentity, args: list[str]) -> str:
        if not args:
            return "Usage: /model <provider/model>, e.g. /model anthropic/claude-sonnet-4"
        model = args[0]
        provider, _, name = model.partition("/")
        if not provider or not name:
            return "Model must be given as provider/model"
        self._directory.set_model(identity, model)
        return f"✅ Model set: {model}"

    async def _session(self, identity: ConversationIdentity, args: list[str]) -> str:
        sub = args[0] if args else ""
        match sub:
            case "list":
                sessions = await self._directory.list_sessions()
                if not sessions:
                    return "No sessions"
                return "Sessions:\n" + "\n".join(
                    f"{s.id}: {s.title or '(untitled)'}" + (f" ({s.model})" if s.model else "")
                    for s in sessions
                )
            case "new":
                session = await self._directory.resolve(identity)
                return f"✅ Session ready: {session.id}\n📝 {session.title}"
            case "switch":
                if len(args) < 2:
                    return "Usage: /session switch <session id>"
                try:
                    session = await self._directory.switch_to(identity, args[1])
                except NotFoundError:
                    return f"❌ Session not found: {args[1]}"
                except TransportError as e:
                    return f"❌ {e}"
                return f"✅ Switched to: {session.id}\n📝 {session.title}"
            case "delete":
                if len(args) < 2:
                    return "Usage: /session delete <session id>"
                try:
                    await self._directory.delete(args[1])
                except NotFoundError:
                    return f"❌ Session not found: {args[1]}"
                except TransportError as e:
                    return f"❌ {e}"
                return f"✅ Deleted session: {args[1]}"
            case "info":
                session = await self._directory.resolve(identity)
                model, agent = self._directory.overrides(identity)
                lines = [
                    "Current session:",
                    f"ID: {session.id}",
                    f"Title: {session.title or '(untitled)'}",
                    f"Model: {model or session.model or 'default'}",
                    f"Agent: {agent or session.agent or 'default'}",
                ]
                if session.created_at:
                    lines.append(f"Created: {session.created_at.isoformat(timespec='seconds')}")
                return "\n".join(lines)
            case _:
                return SESSION_USAGE

    async def _agents(self) -> str:
        agents = await self._backend.list_agents()
        if not agents:
            return "No agents available"
        return "Available agents:\n\n" + "\n\n".join(
            f"🤖 {a.name}" + (f"\n   {a.description}" if a.description else "") for a in agents
        )

    async def _agent(self, identity: ConversationIdentity, args: list[str]) -> str:
        agents = await self._backend.list_agents()
        name = args[0].strip() if args else ""

        if name:
            match = next((a for a in agents if a.name.lower() == name.lower()), None)
            if match is None:
                return f'Agent "{name}" not found. Send /agents to list available agents.'
            self._directory.set_agent(identity, match.name)
            return f"✅ Agent set: {match.name}"

        _, current = self._directory.overrides(identity)
        lines = [f"Current agent: {current or 'not set (OpenCode default)'}"]
        if agents:
            lines += ["", "Available agents:"]
            lines += [f"  - {a.name}" for a in agents]
            lines += ["", "Use /agent <name> to switch."]
        return "\n".join(lines)

    async def _health(self) -> str:
        if await self._backend.health_check():
            return "✅ OpenCode server is healthy"
        return "❌ OpenCode server is unhealthy or unreachable"
