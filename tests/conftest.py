import os

import pytest

from tests.stubs import StubTranslatorClient, write_json


@pytest.fixture
def locales_root(tmp_path):
    """A locales tree with a reference locale (pt-BR) and two empty targets."""
    root = tmp_path / "locales"
    write_json(str(root / "pt-BR" / "common.json"), {
        "greeting": "Olá",
        "farewell": "Tchau",
        "thanks": "Obrigado",
    })
    os.makedirs(root / "en")
    os.makedirs(root / "es")
    return str(root)


@pytest.fixture
def stub_client():
    return StubTranslatorClient()
