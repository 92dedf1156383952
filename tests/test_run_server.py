import pathlib
from unittest.mock import patch

import pytest

import run_server


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Fixture to set up test environment variables"""
    monkeypatch.setenv("API_PORT", "9000")
    monkeypatch.setenv("API_HOST", "0.0.0.0")
    monkeypatch.setenv("API_RELOAD", "true")


@pytest.fixture
def mock_env_vars_default(monkeypatch):
    """Fixture to clear environment variables for testing defaults"""
    monkeypatch.delenv("API_PORT", raising=False)
    monkeypatch.delenv("API_HOST", raising=False)
    monkeypatch.delenv("API_RELOAD", raising=False)


@pytest.fixture
def no_ssl():
    with patch("run_server.ssl_options", return_value={}):
        yield


def test_main_with_env_vars(mock_env_vars, no_ssl):
    """Test main function with environment variables set"""
    with patch("uvicorn.run") as mock_run:
        run_server.main()

        mock_run.assert_called_once_with(
            "mosaic.main:app",
            host="0.0.0.0",
            port=9000,
            reload=True,
        )


def test_main_with_defaults(mock_env_vars_default, no_ssl):
    """Test main function with default values"""
    with patch("uvicorn.run") as mock_run:
        run_server.main()

        mock_run.assert_called_once_with(
            "mosaic.main:app",
            host="127.0.0.1",
            port=8001,
            reload=False,
        )


def test_ssl_options_without_certificates(tmp_path):
    assert run_server.ssl_options(tmp_path) == {}


def test_ssl_options_with_certificates(tmp_path):
    ssl_dir = tmp_path / "ssl"
    ssl_dir.mkdir()
    (ssl_dir / "key.pem").write_text("key")
    (ssl_dir / "cert.pem").write_text("cert")

    assert run_server.ssl_options(tmp_path) == {
        "ssl_keyfile": str(ssl_dir / "key.pem"),
        "ssl_certfile": str(ssl_dir / "cert.pem"),
    }


def test_main_passes_ssl_options(mock_env_vars_default):
    ssl = {"ssl_keyfile": "key.pem", "ssl_certfile": "cert.pem"}
    with patch("run_server.ssl_options", return_value=ssl) as mock_ssl, patch("uvicorn.run") as mock_run:
        run_server.main()

    mock_ssl.assert_called_once_with(pathlib.Path(run_server.__file__).parent)
    assert mock_run.call_args.kwargs["ssl_keyfile"] == "key.pem"
    assert mock_run.call_args.kwargs["ssl_certfile"] == "cert.pem"
