import pytest

from llmlogproxy.config import ENV_OVERRIDES


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run each test from an empty directory with no config env vars set.

    setenv-then-delenv makes monkeypatch restore the original state even for
    variables that python-dotenv sets during the test.
    """
    for name in ENV_OVERRIDES:
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
