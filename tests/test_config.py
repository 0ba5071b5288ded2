from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from kbagent.config import (
    DEFAULT_CONFIG,
    WORKROOT_ENV_VAR,
    build_budget,
    build_chunking_cfg,
    build_compaction_config,
    build_provider_settings,
    build_retrieval_config,
    build_retry_delays,
    deep_merge_config,
    load_effective_config,
    resolve_under_workroot,
    resolve_workroot,
)


class ConfigMergeTests(unittest.TestCase):
    def test_deep_merge_keeps_defaults_and_does_not_alias(self) -> None:
        merged = deep_merge_config(DEFAULT_CONFIG, {"budget": {"max_iterations": 4}})
        self.assertEqual(merged["budget"]["max_iterations"], 4)
        self.assertEqual(merged["budget"]["max_tool_calls"], 30)
        merged["gateway"]["retry_delays_s"].append(9)
        self.assertEqual(DEFAULT_CONFIG["gateway"]["retry_delays_s"], [1, 2])

    def test_load_effective_config_reads_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "configs" / "default.yaml"
            cfg_path.parent.mkdir()
            cfg_path.write_text("model_id: 'anthropic:claude-sonnet-4-5'\nretrieval:\n  fusion: weighted_sum\n", encoding="utf-8")
            cfg, path = load_effective_config(cfg_path)
        self.assertEqual(path, cfg_path)
        self.assertEqual(cfg["model_id"], "anthropic:claude-sonnet-4-5")
        self.assertEqual(build_retrieval_config(cfg).fusion, "weighted_sum")
        self.assertEqual(build_retrieval_config(cfg).rrf_k, 60)

    def test_non_mapping_yaml_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "bad.yaml"
            cfg_path.write_text("- a\n- b\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                load_effective_config(cfg_path)


class ConfigBuilderTests(unittest.TestCase):
    def test_budget_defaults_and_coercion(self) -> None:
        budget = build_budget(DEFAULT_CONFIG)
        self.assertEqual(budget.max_iterations, 15)
        self.assertEqual(budget.max_tool_calls, 30)
        self.assertEqual(budget.max_wall_clock_s, 120.0)
        self.assertIsNone(budget.token_budget)

        budget = build_budget({"budget": {"max_iterations": "3", "token_budget": 500, "max_response_s": "bad"}})
        self.assertEqual(budget.max_iterations, 3)
        self.assertEqual(budget.token_budget, 500)
        self.assertEqual(budget.max_response_s, 45.0)

    def test_unknown_fusion_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_retrieval_config({"retrieval": {"fusion": "borda"}})

    def test_chunking_overlap_is_clamped(self) -> None:
        self.assertEqual(build_chunking_cfg({"chunking": {"max_chars": 500, "overlap": 900}}), (500, 50))

    def test_compaction_ratio_is_clamped(self) -> None:
        self.assertEqual(build_compaction_config({"compaction": {"threshold_ratio": 4}}).threshold_ratio, 1.0)

    def test_retry_delays(self) -> None:
        self.assertEqual(build_retry_delays(DEFAULT_CONFIG), (1.0, 2.0))
        self.assertEqual(build_retry_delays({"gateway": {"retry_delays_s": [0, "0.5", -1]}}), (0.0, 0.5, 0.0))

    def test_provider_api_key_comes_from_env(self) -> None:
        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test"}):
            settings = build_provider_settings(DEFAULT_CONFIG, "openai")
        self.assertEqual(settings.api_key, "sk-test")
        self.assertEqual(settings.base_url, "https://api.openai.com/v1")

        settings = build_provider_settings(DEFAULT_CONFIG, "nope")
        self.assertEqual(settings.base_url, "")
        self.assertEqual(settings.timeout_s, 60.0)


class WorkrootResolutionTests(unittest.TestCase):
    def test_cli_beats_env_beats_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            cfg_path = base / "configs" / "default.yaml"
            cfg = {"workroot": "from-config"}
            self.assertEqual(
                resolve_workroot(cfg, config_path=cfg_path, cli_workroot="cli", env_workroot="env"),
                (base / "cli").resolve(),
            )
            self.assertEqual(
                resolve_workroot(cfg, config_path=cfg_path, env_workroot="env"),
                (base / "env").resolve(),
            )
            self.assertEqual(
                resolve_workroot(cfg, config_path=cfg_path, env_workroot=""),
                (base / "from-config").resolve(),
            )

    def test_defaults_to_config_root_then_cwd(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            self.assertEqual(
                resolve_workroot({}, config_path=base / "configs" / "default.yaml", env_workroot=""),
                base.resolve(),
            )
            self.assertEqual(resolve_workroot({}, config_path=None, env_workroot="", cwd=base), base.resolve())

    def test_env_var_name(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with patch.dict(os.environ, {WORKROOT_ENV_VAR: td}):
                self.assertEqual(resolve_workroot({}, config_path=None), Path(td).resolve())

    def test_relative_paths_resolve_under_workroot(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self.assertEqual(resolve_under_workroot(None, root, "state/"), (root / "state").resolve())
            self.assertEqual(resolve_under_workroot(str(root / "abs"), root, "x"), (root / "abs").resolve())


if __name__ == "__main__":
    unittest.main()
