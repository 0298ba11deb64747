"""Configuration parsing and schema helper tests."""

import json
import os
import tempfile
from unittest import TestCase
from unittest.mock import patch

from memory_neo4j.config import (
    DEFAULT_SLEEP_INTERVAL_MS,
    ExtractionSection,
    Settings,
    context_length_for_model,
    load_config,
    parse_config,
    resolve_extraction_config,
    vector_dims_for_model,
)
from memory_neo4j.exceptions import ConfigError
from memory_neo4j.schema import (
    canonical_name,
    escape_lucene,
    is_valid_memory_id,
    make_pair_key,
    validate_relationship_type,
)


def _base(**extra):
    cfg = {
        "neo4j": {"uri": "bolt://localhost:7687", "password": "pw"},
        "embedding": {"provider": "ollama"},
    }
    cfg.update(extra)
    return cfg


# =============================================================================
# parse_config
# =============================================================================

class ParseConfigTest(TestCase):
    """Strict validation of the plugin config dict."""

    def test_minimal_config_defaults(self):
        cfg = parse_config(_base())
        self.assertEqual(cfg.neo4j.username, "neo4j")
        self.assertEqual(cfg.embedding.model, "mxbai-embed-large")
        self.assertTrue(cfg.auto_capture)
        self.assertTrue(cfg.auto_recall)
        self.assertEqual(cfg.auto_recall_min_score, 0.25)
        self.assertEqual(cfg.graph_search_depth, 1)
        self.assertIsNone(cfg.extraction)
        self.assertTrue(cfg.core_memory.enabled)
        self.assertIsNone(cfg.core_memory.refresh_at_context_percent)
        self.assertEqual(cfg.sleep_cycle.auto_interval_ms, DEFAULT_SLEEP_INTERVAL_MS)

    def test_rejects_non_dict(self):
        with self.assertRaises(ConfigError):
            parse_config(None)
        with self.assertRaises(ConfigError):
            parse_config("bolt://localhost")

    def test_rejects_unknown_top_level_keys(self):
        with self.assertRaises(ConfigError) as ctx:
            parse_config(_base(autoCaptur=True))
        self.assertIn("unknown keys: autoCaptur", str(ctx.exception))

    def test_rejects_unknown_nested_keys(self):
        cfg = _base()
        cfg["neo4j"]["pasword"] = "typo"
        with self.assertRaises(ConfigError):
            parse_config(cfg)

    def test_neo4j_section_required(self):
        with self.assertRaises(ConfigError):
            parse_config({"embedding": {"provider": "ollama"}})

    def test_invalid_uri_scheme(self):
        cfg = _base()
        cfg["neo4j"]["uri"] = "http://localhost:7474"
        with self.assertRaises(ConfigError):
            parse_config(cfg)

    def test_user_preferred_over_username(self):
        cfg = _base()
        cfg["neo4j"].update({"user": "alice", "username": "bob"})
        self.assertEqual(parse_config(cfg).neo4j.username, "alice")

    def test_env_var_resolution(self):
        cfg = _base()
        cfg["neo4j"]["password"] = "${MEMORY_TEST_PW}"
        with patch.dict(os.environ, {"MEMORY_TEST_PW": "s3cret"}):
            self.assertEqual(parse_config(cfg).neo4j.password, "s3cret")

    def test_missing_env_var_raises(self):
        cfg = _base()
        cfg["neo4j"]["password"] = "${MEMORY_TEST_UNSET_VAR}"
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("MEMORY_TEST_UNSET_VAR", None)
            with self.assertRaises(ConfigError) as ctx:
                parse_config(cfg)
        self.assertIn("MEMORY_TEST_UNSET_VAR", str(ctx.exception))

    def test_openai_requires_api_key(self):
        with self.assertRaises(ConfigError):
            parse_config(_base(embedding={"provider": "openai"}))

    def test_graph_depth_bounds(self):
        self.assertEqual(parse_config(_base(graphSearchDepth=3)).graph_search_depth, 3)
        for bad in (0, 4, 1.5, "2"):
            with self.assertRaises(ConfigError):
                parse_config(_base(graphSearchDepth=bad))

    def test_min_score_bounds(self):
        with self.assertRaises(ConfigError):
            parse_config(_base(autoRecallMinScore=1.5))

    def test_refresh_percent(self):
        cfg = parse_config(_base(coreMemory={"refreshAtContextPercent": 70}))
        self.assertEqual(cfg.core_memory.refresh_at_context_percent, 70)
        cfg = parse_config(_base(coreMemory={"refreshAtContextPercent": 0}))
        self.assertIsNone(cfg.core_memory.refresh_at_context_percent)
        with self.assertRaises(ConfigError):
            parse_config(_base(coreMemory={"refreshAtContextPercent": 150}))

    def test_decay_curves(self):
        cfg = parse_config(_base(decayCurves={"fact": {"halfLifeDays": 90}}))
        self.assertEqual(cfg.decay_curves, {"fact": 90.0})
        with self.assertRaises(ConfigError):
            parse_config(_base(decayCurves={"fact": {"halfLifeDays": 0}}))

    def test_sleep_cycle_interval_must_be_positive(self):
        with self.assertRaises(ConfigError):
            parse_config(_base(sleepCycle={"autoIntervalMs": -5}))
        self.assertFalse(parse_config(_base(sleepCycle={"auto": False})).sleep_cycle.auto)

    def test_skip_patterns_compiled(self):
        cfg = parse_config(_base(autoRecallSkipPattern="^voice:"))
        self.assertTrue(cfg.auto_recall_skip_pattern.search("voice:123"))
        with self.assertRaises(ConfigError):
            parse_config(_base(autoCaptureSkipPattern="(unclosed"))

    def test_extraction_section(self):
        cfg = parse_config(_base(extraction={"baseUrl": "http://localhost:11434/v1", "model": "qwen3"}))
        self.assertEqual(cfg.extraction.model, "qwen3")
        self.assertEqual(cfg.extraction.base_url, "http://localhost:11434/v1")


class ResolveExtractionConfigTest(TestCase):

    def _settings(self, **kwargs):
        return Settings(_env_file=None, **kwargs)

    def test_disabled_without_key_or_base_url(self):
        with patch("memory_neo4j.config.get_settings", return_value=self._settings(openrouter_api_key="")):
            self.assertFalse(resolve_extraction_config(None).enabled)

    def test_enabled_with_env_api_key(self):
        settings = self._settings(openrouter_api_key="sk-or-test")
        with patch("memory_neo4j.config.get_settings", return_value=settings):
            config = resolve_extraction_config(None)
        self.assertTrue(config.enabled)
        self.assertEqual(config.api_key, "sk-or-test")
        self.assertEqual(config.max_retries, 2)

    def test_enabled_with_explicit_base_url(self):
        section = ExtractionSection(api_key=None, model="llama3", base_url="http://localhost:11434/v1")
        with patch("memory_neo4j.config.get_settings", return_value=self._settings(openrouter_api_key="")):
            config = resolve_extraction_config(section)
        self.assertTrue(config.enabled)
        self.assertEqual(config.model, "llama3")


class LoadConfigTest(TestCase):

    def test_reads_json_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "memory.json")
            with open(path, "w") as f:
                json.dump(_base(autoRecall=False), f)
            self.assertFalse(load_config(path).auto_recall)

    def test_explicit_missing_path_raises(self):
        with self.assertRaises(ConfigError):
            load_config("/nonexistent/memory.json")


class ModelTableTest(TestCase):

    def test_vector_dims(self):
        self.assertEqual(vector_dims_for_model("text-embedding-3-small"), 1536)
        self.assertEqual(vector_dims_for_model("mxbai-embed-large:latest"), 1024)
        self.assertEqual(vector_dims_for_model("totally-unknown"), 1024)

    def test_context_length(self):
        self.assertEqual(context_length_for_model("mxbai-embed-large-2k:latest"), 2048)
        self.assertEqual(context_length_for_model("unknown"), 512)


# =============================================================================
# Schema helpers
# =============================================================================

class SchemaHelpersTest(TestCase):

    def test_relationship_allowlist(self):
        self.assertTrue(validate_relationship_type("WORKS_AT"))
        self.assertFalse(validate_relationship_type("works_at"))
        self.assertFalse(validate_relationship_type("KNOWS]->(x) DELETE x"))

    def test_memory_id_shape(self):
        self.assertTrue(is_valid_memory_id("7F1C2B9E-2A4D-4C55-9A3B-1E2F3A4B5C6D"))
        self.assertFalse(is_valid_memory_id("not-a-uuid"))
        self.assertFalse(is_valid_memory_id(None))

    def test_pair_key_is_order_independent(self):
        self.assertEqual(make_pair_key("b", "a"), make_pair_key("a", "b"))
        self.assertEqual(make_pair_key("b", "a"), "a:b")

    def test_escape_lucene(self):
        self.assertEqual(escape_lucene('a+b "c"'), 'a\\+b \\"c\\"')

    def test_canonical_name(self):
        self.assertEqual(canonical_name("  Alice Smith "), "alice smith")
