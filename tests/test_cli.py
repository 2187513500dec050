import os

from typer.testing import CliRunner

from chat_sync.cli.main import app

runner = CliRunner()


class TestCli:

    def test_status_of_fresh_device(self, temp_dir):
        db_path = os.path.join(temp_dir, "cli.db")

        result = runner.invoke(app, ["status", "--db", db_path])

        assert result.exit_code == 0
        assert "not registered" in result.output
        assert "Unsent Messages" in result.output

    def test_post_requires_registration(self, temp_dir):
        db_path = os.path.join(temp_dir, "cli.db")

        result = runner.invoke(app, ["post", "general", "hi", "--db", db_path])

        assert result.exit_code == 1
        assert "Post failed" in result.output

    def test_db_path_from_environment(self, temp_dir):
        db_path = os.path.join(temp_dir, "env.db")

        result = runner.invoke(app, ["messages"], env={"CHAT_SYNC_DB_PATH": db_path})

        assert result.exit_code == 0
        assert os.path.exists(db_path)
