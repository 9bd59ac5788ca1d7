from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner

from clipbatch import __version__
from clipbatch.cli import main


class TestCli:
    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_run_requires_one_input(self, tmp_path: Path) -> None:
        prompts = tmp_path / "prompts.txt"
        prompts.write_text("a cat\n", encoding="utf-8")

        neither = CliRunner().invoke(main, ["run"])
        assert neither.exit_code == 2
        both = CliRunner().invoke(main, ["run", "--prompts", str(prompts), "--images", str(tmp_path)])
        assert both.exit_code == 2

    def test_concurrency_bounds(self, tmp_path: Path) -> None:
        prompts = tmp_path / "prompts.txt"
        prompts.write_text("a cat\n", encoding="utf-8")
        result = CliRunner().invoke(
            main, ["run", "--prompts", str(prompts), "--concurrency", "11", "--dry-run"]
        )
        assert result.exit_code == 2

    def test_dry_run(self, tmp_path: Path) -> None:
        prompts = tmp_path / "prompts.txt"
        prompts.write_text("a cat on a skateboard\n", encoding="utf-8")
        output = tmp_path / "clips"

        result = CliRunner().invoke(
            main,
            ["run", "--prompts", str(prompts), "--output", str(output), "--dry-run", "--no-history"],
            env={"CLIPBATCH_LOG_LEVEL": "ERROR"},
        )

        assert result.exit_code == 0, result.output
        assert "1 completed" in result.output
        assert len(list(output.glob("txt_*.mp4"))) == 1

    def test_init_creates_database(self, tmp_path: Path) -> None:
        db_path = tmp_path / "history.db"
        result = CliRunner().invoke(main, ["init", "--db-path", str(db_path)])
        assert result.exit_code == 0
        assert db_path.exists()
