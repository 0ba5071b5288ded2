from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from kbagent.providers.base import ToolDefinition
from kbagent.vault import VaultStore


POLICY_VERSION = "kbagent.instructions.v1"

AGENTS_FILE = "AGENTS.md"
RULES_FILE = ".kbagent/rules"
HINTS_FILE = ".kbagent/hints"

IDENTITY_AND_SAFETY = """You are kbagent, a careful collaborator on the user's markdown knowledge base.
The vault is shared space between you and the user.

Safety:
- Never claim a note was created or updated without verification proof (readback_ok=true).
- If a tool fails, say what happened and propose the next step.
- Respond in the user's preferred language from Runtime Context unless asked otherwise.

Workflow:
- When the task is clear, use tools right away.
- If a tool returns an error or nothing, tell the user. Never invent content that should come from the vault or the web.
- If kb_search finds nothing, retry once with synonyms or broader terms before giving up.
- Cite notes as [Source: path#heading] when you use them."""


@dataclass(frozen=True)
class InstructionSources:
    agents_md: Optional[str] = None
    rules: Optional[str] = None
    hints: Optional[str] = None


@dataclass(frozen=True)
class RuntimeContext:
    date: str
    vault_path: str
    note_count: int
    language: Optional[str]
    provider: str
    model: str
    folder_instructions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ComposedPrompt:
    prompt: str
    policy_version: str
    policy_fingerprint: str


def policy_fingerprint(identity: str = IDENTITY_AND_SAFETY) -> str:
    return hashlib.sha256(identity.strip().encode("utf-8")).hexdigest()


def load_instruction_sources(vault: VaultStore) -> InstructionSources:
    return InstructionSources(
        agents_md=vault.read_dotfile(AGENTS_FILE),
        rules=vault.read_dotfile(RULES_FILE),
        hints=vault.read_dotfile(HINTS_FILE),
    )


def tool_catalog_lines(tools: List[ToolDefinition]) -> List[str]:
    return [f"- {t.name}: {t.description}" for t in tools]


def runtime_context(
    *,
    vault_path: str,
    note_count: int,
    language: Optional[str],
    provider: str,
    model: str,
    folder_instructions: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> RuntimeContext:
    return RuntimeContext(
        date=(now or datetime.now()).strftime("%Y-%m-%d %H:%M"),
        vault_path=vault_path,
        note_count=int(note_count),
        language=(language or "").strip() or None,
        provider=provider,
        model=model,
        folder_instructions=list(folder_instructions or []),
    )


def build_system_prompt(
    ctx: RuntimeContext,
    sources: InstructionSources,
    tools: List[ToolDefinition],
    *,
    identity: str = IDENTITY_AND_SAFETY,
) -> ComposedPrompt:
    """
    Concatenate the prompt blocks in fixed precedence order:
    identity and safety, AGENTS.md, rules, hints, tool catalog, runtime context.
    """
    blocks: List[str] = [identity.strip()]

    agents_md = (sources.agents_md or "").strip()
    if agents_md:
        blocks.append(agents_md)
    rules = (sources.rules or "").strip()
    if rules:
        blocks.append(f"Rules (must follow):\n{rules}")
    hints = (sources.hints or "").strip()
    if hints:
        blocks.append(f"Hints (guidance):\n{hints}")

    lines = tool_catalog_lines(tools)
    blocks.append("Available Tools:\n" + ("\n".join(lines) if lines else "- no tools registered"))

    runtime = [
        "Runtime Context:",
        f"Current date: {ctx.date}",
        f"Vault path: {ctx.vault_path}",
        f"Total notes: {ctx.note_count}",
        f"User language preference: {ctx.language or 'not set'}",
        f"Provider/model: {ctx.provider}/{ctx.model}",
    ]
    if ctx.folder_instructions:
        runtime.append("Folder instructions (root to leaf):")
        runtime.extend(f"{i}. {text}" for i, text in enumerate(ctx.folder_instructions, start=1))
    blocks.append("\n".join(runtime))

    return ComposedPrompt(
        prompt="\n\n".join(blocks),
        policy_version=POLICY_VERSION,
        policy_fingerprint=policy_fingerprint(identity),
    )
