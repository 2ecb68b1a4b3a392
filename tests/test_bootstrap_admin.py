import pytest

from authcore.service.runtime import get_runtime
from scripts.bootstrap_admin import main, validate_password

STRONG = "Str0ng!Passw0rd"


@pytest.mark.parametrize(
    "password, ok",
    [
        (STRONG, True),
        ("alllowercaseletters", False),
        ("Short1!", False),
        ("lowercase12345", False),
        ("Lowercase12345", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


class TestMain:
    def test_creates_admin(self, capsys):
        code = main(["--username", "root", "--email", "root@example.com", "--password", STRONG])

        assert code == 0
        store = get_runtime().store
        user = store.get_user_by_username("root")
        assert "admin" in store.get_user_roles(user.id)
        assert "Admin user created successfully" in capsys.readouterr().out

    def test_promotes_existing_user(self):
        runtime = get_runtime()
        user = runtime.auth.register("alice", "alice@example.com", STRONG).unwrap()
        stamp = runtime.store.get_user(user.id).security_stamp

        code = main(["--username", "alice", "--email", "alice@example.com", "--password", STRONG])

        assert code == 0
        assert runtime.store.get_user_roles(user.id) == ["admin", "user"]
        assert runtime.store.get_user(user.id).security_stamp != stamp

    def test_dry_run_changes_nothing(self):
        code = main(
            ["--email", "root@example.com", "--password", STRONG, "--dry-run"]
        )
        assert code == 0
        assert get_runtime().store.get_user_by_email("root@example.com") is None

    def test_rejects_weak_password(self, capsys):
        assert main(["--email", "root@example.com", "--password", "weak"]) == 1
        assert "at least 12 characters" in capsys.readouterr().out

    def test_requires_email(self, monkeypatch):
        monkeypatch.delenv("ADMIN_EMAIL", raising=False)
        assert main(["--password", STRONG]) == 1
