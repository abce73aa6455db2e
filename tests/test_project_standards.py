from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]


def test_required_project_files_exist():
    required_paths = [
        PROJECT_ROOT / "README.md",
        PROJECT_ROOT / ".gitignore",
        PROJECT_ROOT / ".env.example",
        PROJECT_ROOT / "pyproject.toml",
    ]
    missing = [str(path) for path in required_paths if not path.exists()]
    assert not missing, f"Missing required project files: {missing}"


def test_env_example_uses_placeholder_key():
    env_example = (PROJECT_ROOT / ".env.example").read_text(encoding="utf-8")
    assert "DART_API_KEY=your-opendart-api-key" in env_example
    for name in ["CACHE_DB_PATH", "HTTP_MAX_RETRIES", "LOG_LEVEL"]:
        assert f"{name}=" in env_example


def test_gitignore_covers_runtime_artifacts():
    gitignore = (PROJECT_ROOT / ".gitignore").read_text(encoding="utf-8")
    for pattern in [".venv/", ".env", "data/cache/"]:
        assert pattern in gitignore


def test_pyproject_declares_runtime_and_test_dependencies():
    pyproject = (PROJECT_ROOT / "pyproject.toml").read_text(encoding="utf-8")
    for name in ["fastapi", "pydantic", "requests", "beautifulsoup4", "python-dotenv", "uvicorn", "pytest", "httpx"]:
        assert f'"{name}>=' in pyproject
    assert "[project.optional-dependencies]" in pyproject


def test_readme_contains_quickstart_and_test_sections():
    readme = (PROJECT_ROOT / "README.md").read_text(encoding="utf-8")
    assert "## Quickstart" in readme
    assert "## Tests" in readme
    assert "python -m pytest" in readme
