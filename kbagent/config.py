from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from kbagent.budget import RunBudget


WORKROOT_ENV_VAR = "KBAGENT_WORKROOT"

DEFAULT_CONFIG: Dict[str, Any] = {
    "workroot": None,
    "vault_path": "vault/",
    "state_dir": "state/",
    "model_id": "ollama:qwen3:8b",
    "fallback_model_id": "",
    "language": "",
    "budget": {
        "max_iterations": 15,
        "max_tool_calls": 30,
        "max_wall_clock_s": 120,
        "max_response_s": 45,
        "token_budget": None,
        "max_verify_failures": 3,
    },
    "providers": {
        "ollama": {"base_url": "http://127.0.0.1:11434", "api_key_env": "", "timeout_s": 60},
        "openai": {"base_url": "https://api.openai.com/v1", "api_key_env": "OPENAI_API_KEY", "timeout_s": 60},
        "openrouter": {
            "base_url": "https://openrouter.ai/api/v1",
            "api_key_env": "OPENROUTER_API_KEY",
            "timeout_s": 60,
        },
        "lm_studio": {"base_url": "http://127.0.0.1:1234/v1", "api_key_env": "", "timeout_s": 60},
        "anthropic": {
            "base_url": "https://api.anthropic.com/v1",
            "api_key_env": "ANTHROPIC_API_KEY",
            "timeout_s": 60,
        },
        "google": {
            "base_url": "https://generativelanguage.googleapis.com/v1beta",
            "api_key_env": "GOOGLE_API_KEY",
            "timeout_s": 60,
        },
    },
    "retrieval": {
        "fusion": "rrf",
        "rrf_k": 60,
        "lexical_weight": 0.5,
        "vector_weight": 0.5,
        "rerank_enabled": True,
        "rerank_top_k": 8,
        "hyde_enabled": True,
        "hyde_min_chunks": 100,
        "hyde_timeout_s": 8,
    },
    "embed": {
        "provider": "ollama",
        "model_id": "nomic-embed-text",
        "base_url": "http://127.0.0.1:11434",
        "timeout_s": 60,
        "batch_size": 32,
    },
    "chunking": {
        "max_chars": 1200,
        "overlap": 120,
    },
    "compaction": {
        "threshold_ratio": 0.8,
        "keep_recent": 6,
        "flush_to_note": False,
    },
    "web_search": {
        "backend": "",
        "base_url": "",
        "api_key_env": "",
        "max_results": 5,
        "timeout_s": 20,
    },
    "gateway": {
        "retry_delays_s": [1, 2],
    },
    "emitter": {
        "queue_size": 1024,
    },
    "logging": {
        "level": "WARNING",
    },
}


def discover_config_path(repo_root: Optional[Path] = None) -> Optional[Path]:
    root = (repo_root or Path(__file__).resolve().parent.parent).resolve()
    candidate = root / "configs" / "default.yaml"
    if candidate.exists():
        return candidate
    return None


def load_config_with_path(
    config_path: Optional[Path] = None,
    repo_root: Optional[Path] = None,
) -> Tuple[Dict[str, Any], Optional[Path]]:
    cfg_path = config_path or discover_config_path(repo_root=repo_root)
    if cfg_path is None:
        return {}, None
    with cfg_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{cfg_path}: config file must contain a mapping/object")
    return data, cfg_path


def deep_merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in base.items():
        if isinstance(v, dict):
            out[k] = deep_merge_config(v, {})
        elif isinstance(v, list):
            out[k] = list(v)
        else:
            out[k] = v

    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge_config(out[k], v)
        elif isinstance(v, dict):
            out[k] = deep_merge_config({}, v)
        elif isinstance(v, list):
            out[k] = list(v)
        else:
            out[k] = v
    return out


def load_effective_config(config_path: Optional[Path] = None) -> Tuple[Dict[str, Any], Optional[Path]]:
    loaded, path = load_config_with_path(config_path=config_path)
    return deep_merge_config(DEFAULT_CONFIG, loaded), path


def _string(value: Any, default: str = "") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _as_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    defaults = DEFAULT_CONFIG.get(name, {})
    raw = cfg.get(name)
    out = dict(defaults) if isinstance(defaults, dict) else {}
    if isinstance(raw, dict):
        out.update(raw)
    return out


def build_budget(cfg: Dict[str, Any]) -> RunBudget:
    raw = _section(cfg, "budget")
    token_budget = _as_int(raw.get("token_budget"), 0)
    return RunBudget(
        max_iterations=max(1, _as_int(raw.get("max_iterations"), 15)),
        max_tool_calls=max(0, _as_int(raw.get("max_tool_calls"), 30)),
        max_wall_clock_s=max(1.0, _as_float(raw.get("max_wall_clock_s"), 120.0)),
        max_response_s=max(1.0, _as_float(raw.get("max_response_s"), 45.0)),
        token_budget=token_budget if token_budget > 0 else None,
        max_verify_failures=max(0, _as_int(raw.get("max_verify_failures"), 3)),
    )


@dataclass(frozen=True)
class RetrievalConfig:
    fusion: str = "rrf"
    rrf_k: int = 60
    lexical_weight: float = 0.5
    vector_weight: float = 0.5
    rerank_enabled: bool = True
    rerank_top_k: int = 8
    hyde_enabled: bool = True
    hyde_min_chunks: int = 100
    hyde_timeout_s: float = 8.0


def build_retrieval_config(cfg: Dict[str, Any]) -> RetrievalConfig:
    raw = _section(cfg, "retrieval")
    fusion = _string(raw.get("fusion"), "rrf").lower()
    if fusion not in {"rrf", "weighted_sum"}:
        raise ValueError(f"Unsupported fusion strategy: {fusion}")
    return RetrievalConfig(
        fusion=fusion,
        rrf_k=max(1, _as_int(raw.get("rrf_k"), 60)),
        lexical_weight=max(0.0, _as_float(raw.get("lexical_weight"), 0.5)),
        vector_weight=max(0.0, _as_float(raw.get("vector_weight"), 0.5)),
        rerank_enabled=_as_bool(raw.get("rerank_enabled"), True),
        rerank_top_k=max(1, _as_int(raw.get("rerank_top_k"), 8)),
        hyde_enabled=_as_bool(raw.get("hyde_enabled"), True),
        hyde_min_chunks=max(0, _as_int(raw.get("hyde_min_chunks"), 100)),
        hyde_timeout_s=max(0.5, _as_float(raw.get("hyde_timeout_s"), 8.0)),
    )


@dataclass(frozen=True)
class ProviderSettings:
    name: str
    base_url: str
    api_key: str
    timeout_s: float


def build_provider_settings(cfg: Dict[str, Any], provider: str) -> ProviderSettings:
    providers = _section(cfg, "providers")
    raw = providers.get(provider)
    if not isinstance(raw, dict):
        raw = {}
    env_name = _string(raw.get("api_key_env"))
    api_key = _string(raw.get("api_key")) or (_string(os.environ.get(env_name)) if env_name else "")
    return ProviderSettings(
        name=provider,
        base_url=_string(raw.get("base_url")).rstrip("/"),
        api_key=api_key,
        timeout_s=max(1.0, _as_float(raw.get("timeout_s"), 60.0)),
    )


@dataclass(frozen=True)
class CompactionConfig:
    threshold_ratio: float = 0.8
    keep_recent: int = 6
    flush_to_note: bool = False


def build_compaction_config(cfg: Dict[str, Any]) -> CompactionConfig:
    raw = _section(cfg, "compaction")
    ratio = _as_float(raw.get("threshold_ratio"), 0.8)
    return CompactionConfig(
        threshold_ratio=min(1.0, max(0.1, ratio)),
        keep_recent=max(1, _as_int(raw.get("keep_recent"), 6)),
        flush_to_note=_as_bool(raw.get("flush_to_note"), False),
    )


@dataclass(frozen=True)
class WebSearchConfig:
    backend: str = ""
    base_url: str = ""
    api_key: str = ""
    max_results: int = 5
    timeout_s: float = 20.0


def build_web_search_config(cfg: Dict[str, Any]) -> WebSearchConfig:
    raw = _section(cfg, "web_search")
    env_name = _string(raw.get("api_key_env"))
    api_key = _string(raw.get("api_key")) or (_string(os.environ.get(env_name)) if env_name else "")
    return WebSearchConfig(
        backend=_string(raw.get("backend")).lower(),
        base_url=_string(raw.get("base_url")).rstrip("/"),
        api_key=api_key,
        max_results=min(20, max(1, _as_int(raw.get("max_results"), 5))),
        timeout_s=max(1.0, _as_float(raw.get("timeout_s"), 20.0)),
    )


def build_embed_cfg(cfg: Dict[str, Any]) -> Dict[str, Any]:
    raw = _section(cfg, "embed")
    return {
        "provider": _string(raw.get("provider"), "ollama").lower(),
        "model_id": _string(raw.get("model_id"), "nomic-embed-text"),
        "base_url": _string(raw.get("base_url"), "http://127.0.0.1:11434").rstrip("/"),
        "timeout_s": max(1, _as_int(raw.get("timeout_s"), 60)),
        "batch_size": max(1, _as_int(raw.get("batch_size"), 32)),
    }


def build_chunking_cfg(cfg: Dict[str, Any]) -> Tuple[int, int]:
    raw = _section(cfg, "chunking")
    max_chars = max(200, _as_int(raw.get("max_chars"), 1200))
    overlap = max(0, _as_int(raw.get("overlap"), 120))
    if overlap >= max_chars:
        overlap = max_chars // 10
    return max_chars, overlap


def config_root_from_config_path(config_path: Optional[Path]) -> Optional[Path]:
    if config_path is None:
        return None
    cfg_parent = config_path.resolve().parent
    if cfg_parent.name.lower() == "configs":
        return cfg_parent.parent
    return cfg_parent


def _resolve_candidate_root(raw_value: Optional[str], base_dir: Path) -> Optional[Path]:
    if raw_value is None:
        return None
    p = Path(raw_value).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


def resolve_workroot(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[Path],
    cli_workroot: Optional[str] = None,
    env_workroot: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> Path:
    cwd_resolved = (cwd or Path.cwd()).resolve()
    config_root = config_root_from_config_path(config_path)
    env_value = env_workroot if env_workroot is not None else os.environ.get(WORKROOT_ENV_VAR)
    selected = _string(cli_workroot) or _string(env_value) or _string(cfg.get("workroot")) or None
    workroot = _resolve_candidate_root(selected, config_root or cwd_resolved)
    return workroot or config_root or cwd_resolved


def resolve_under_workroot(raw: Any, workroot: Path, default: str) -> Path:
    p = Path(_string(raw, default)).expanduser()
    if not p.is_absolute():
        p = workroot / p
    return p.resolve()


def build_retry_delays(cfg: Dict[str, Any]) -> Tuple[float, ...]:
    raw = _section(cfg, "gateway").get("retry_delays_s")
    if not isinstance(raw, list):
        return (1.0, 2.0)
    return tuple(max(0.0, _as_float(v, 1.0)) for v in raw)


def build_emitter_queue_size(cfg: Dict[str, Any]) -> int:
    return max(16, _as_int(_section(cfg, "emitter").get("queue_size"), 1024))
