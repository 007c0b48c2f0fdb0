"""
Tests for execution/legal_search/preferences.py
"""

import json


class TestPreferenceStore:

    def test_missing_file_uses_defaults(self, tmp_path):
        from execution.legal_search.preferences import DISMISSED_DATA_PROMPT, PreferenceStore
        prefs = PreferenceStore(tmp_path / "prefs.json")
        assert prefs.get_bool(DISMISSED_DATA_PROMPT) is False
        assert prefs.get_bool(DISMISSED_DATA_PROMPT, default=True) is True

    def test_set_persists(self, tmp_path):
        from execution.legal_search.preferences import STATUTE_SEMANTIC_ENABLED, PreferenceStore
        path = tmp_path / "nested" / "prefs.json"
        PreferenceStore(path).set_bool(STATUTE_SEMANTIC_ENABLED, True)

        assert json.loads(path.read_text()) == {"statuteSemanticEnabled": True}
        assert PreferenceStore(path).get_bool(STATUTE_SEMANTIC_ENABLED) is True
        assert not (tmp_path / "nested" / "prefs.tmp").exists()

    def test_corrupt_file_ignored(self, tmp_path):
        from execution.legal_search.preferences import PreferenceStore
        path = tmp_path / "prefs.json"
        path.write_text("{not json")
        prefs = PreferenceStore(path)
        assert prefs.get_bool("dismissedDataPrompt") is False
        prefs.set_bool("dismissedDataPrompt", True)
        assert json.loads(path.read_text()) == {"dismissedDataPrompt": True}

    def test_non_object_file_ignored(self, tmp_path):
        from execution.legal_search.preferences import PreferenceStore
        path = tmp_path / "prefs.json"
        path.write_text("[1, 2]")
        assert PreferenceStore(path).get_bool("x") is False

    def test_non_bool_value_returns_default(self, tmp_path):
        from execution.legal_search.preferences import PreferenceStore
        path = tmp_path / "prefs.json"
        path.write_text(json.dumps({"caseLawSemanticEnabled": "yes"}))
        assert PreferenceStore(path).get_bool("caseLawSemanticEnabled") is False

    def test_env_path(self, tmp_path, monkeypatch):
        from execution.legal_search.preferences import PreferenceStore
        monkeypatch.setenv("LEGAL_SEARCH_PREFS", str(tmp_path / "env.json"))
        assert PreferenceStore().path == tmp_path / "env.json"
