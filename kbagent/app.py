from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from kbagent.config import (
    build_budget,
    build_chunking_cfg,
    build_compaction_config,
    build_embed_cfg,
    build_retrieval_config,
    build_retry_delays,
    build_web_search_config,
    resolve_under_workroot,
    resolve_workroot,
)
from kbagent.embedder import Embedder
from kbagent.embedders.ollama import create_embedder
from kbagent.providers.gateway import ProviderGateway
from kbagent.providers.registry import split_model_id
from kbagent.retrieval import HydeGenerator, RetrievalEngine, hyde_messages
from kbagent.run_loop import RunLoop
from kbagent.run_registry import RunRegistry
from kbagent.tools import ToolExecutor
from kbagent.vault import VaultStore
from kbagent.web_search import WebSearchClient


INDEX_DB = "index.sqlite"
LEDGER_DB = "ledger.sqlite"
CONVERSATIONS_DB = "conversations.sqlite"
COMMITS_DB = "commits.sqlite"


@dataclass(frozen=True)
class StatePaths:
    state_dir: Path
    index_db: Path
    ledger_db: Path
    conversations_db: Path
    commits_db: Path

    @classmethod
    def under(cls, state_dir: Path) -> "StatePaths":
        return cls(
            state_dir=state_dir,
            index_db=state_dir / INDEX_DB,
            ledger_db=state_dir / LEDGER_DB,
            conversations_db=state_dir / CONVERSATIONS_DB,
            commits_db=state_dir / COMMITS_DB,
        )


@dataclass
class AgentApp:
    cfg: Dict[str, Any]
    workroot: Path
    paths: StatePaths
    vault: VaultStore
    embedder: Optional[Embedder]
    gateway: ProviderGateway
    retrieval: RetrievalEngine
    tools: ToolExecutor
    loop: RunLoop
    registry: RunRegistry


def make_hyde_generator(gateway: ProviderGateway, model_id: str, timeout_s: float) -> HydeGenerator:
    def generate(query: str) -> Optional[str]:
        ref = split_model_id(model_id)
        return gateway.complete(hyde_messages(query), ref, timeout_s=timeout_s).text

    return generate


def build_app(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[Path] = None,
    cli_workroot: Optional[str] = None,
    gateway: Optional[ProviderGateway] = None,
    embedder: Optional[Embedder] = None,
    with_embedder: bool = True,
) -> AgentApp:
    """Wire stores, retrieval, tools and the run loop from one effective config."""
    workroot = resolve_workroot(cfg, config_path=config_path, cli_workroot=cli_workroot)
    vault_root = resolve_under_workroot(cfg.get("vault_path"), workroot, "vault/")
    vault_root.mkdir(parents=True, exist_ok=True)
    paths = StatePaths.under(resolve_under_workroot(cfg.get("state_dir"), workroot, "state/"))
    paths.state_dir.mkdir(parents=True, exist_ok=True)

    model_id = str(cfg.get("model_id") or "ollama:qwen3:8b").strip()
    retrieval_cfg = build_retrieval_config(cfg)
    gw = gateway or ProviderGateway.from_config(cfg, retry_delays=build_retry_delays(cfg))
    if embedder is None and with_embedder:
        embedder = create_embedder(build_embed_cfg(cfg))

    vault = VaultStore(vault_root)
    retrieval = RetrievalEngine(
        db_path=paths.index_db,
        config=retrieval_cfg,
        embedder=embedder,
        hyde_generator=make_hyde_generator(gw, model_id, retrieval_cfg.hyde_timeout_s),
    )
    tools = ToolExecutor(
        vault=vault,
        commit_db_path=paths.commits_db,
        retrieval=retrieval,
        web=WebSearchClient(build_web_search_config(cfg)),
        chunking=build_chunking_cfg(cfg),
    )
    loop = RunLoop(
        gateway=gw,
        tools=tools,
        vault=vault,
        retrieval=retrieval,
        ledger_path=paths.ledger_db,
        conversations_path=paths.conversations_db,
        budget=build_budget(cfg),
        compaction=build_compaction_config(cfg),
        default_model_id=model_id,
        fallback_model_id=str(cfg.get("fallback_model_id") or ""),
        language=str(cfg.get("language") or "").strip() or None,
    )
    return AgentApp(
        cfg=cfg,
        workroot=workroot,
        paths=paths,
        vault=vault,
        embedder=embedder,
        gateway=gw,
        retrieval=retrieval,
        tools=tools,
        loop=loop,
        registry=RunRegistry(loop),
    )
