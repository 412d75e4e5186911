import os

import pytest

from dosync.compose import load_compose, parse_compose, replace_images, rewrite_images
from dosync.errors import ComposeError, ComposeRewriteFailed


def test_parse_services(compose_file):
    compose = load_compose(str(compose_file))
    assert compose.project == "proj"
    web = compose.service("web")
    assert web.image == "ghcr.io/acme/web:1.0.0"
    assert web.declared_replicas == 3
    assert web.depends_on == ("api",)
    assert compose.service("api").depends_on == ("db",)
    assert compose.service("db").declared_replicas == 1
    with pytest.raises(ComposeError):
        compose.service("cache")


def test_project_name_defaults_to_directory(tmp_path):
    d = tmp_path / "My_App"
    d.mkdir()
    p = d / "docker-compose.yml"
    p.write_text("services:\n  a:\n    image: x:1\n", encoding="utf-8")
    assert load_compose(str(p)).project == "my_app"


def test_invalid_compose():
    with pytest.raises(ComposeError):
        parse_compose("services: [1, 2]")
    with pytest.raises(ComposeError):
        parse_compose("services:\n  a:\n    scale: many\n")


def test_rewrite_keeps_quotes_comments_and_other_lines(compose_file):
    before = compose_file.read_text(encoding="utf-8")
    changed = rewrite_images(str(compose_file), {"web": "ghcr.io/acme/web:1.1.0"}, "backup.yml")
    assert changed
    after = compose_file.read_text(encoding="utf-8")
    assert '    image: "ghcr.io/acme/web:1.1.0"  # pinned by dosync\n' in after
    assert after.replace("1.1.0", "1.0.0", 1) == before
    assert (compose_file.parent / "backup.yml").read_text(encoding="utf-8") == before


def test_rewrite_is_idempotent(compose_file):
    images = {"api": "ghcr.io/acme/api:2.0.0"}
    assert rewrite_images(str(compose_file), images, "backup.yml")
    first = compose_file.read_text(encoding="utf-8")
    os.remove(compose_file.parent / "backup.yml")
    assert not rewrite_images(str(compose_file), images, "backup.yml")
    assert compose_file.read_text(encoding="utf-8") == first
    assert not (compose_file.parent / "backup.yml").exists()


def test_rewrite_missing_image_line_leaves_file_alone(tmp_path):
    p = tmp_path / "docker-compose.yml"
    text = "services:\n  app:\n    build: .\n"
    p.write_text(text, encoding="utf-8")
    with pytest.raises(ComposeRewriteFailed):
        rewrite_images(str(p), {"app": "x:2"})
    assert p.read_text(encoding="utf-8") == text


def test_replace_only_touches_named_service_image():
    text = (
        "services:\n"
        "  a:\n"
        "    image: a:1\n"
        "    environment:\n"
        "      image: not-this\n"
        "  b:\n"
        "    image: 'b:1'\r\n"
        "volumes:\n"
        "  image: x\n"
    )
    out = replace_images(text, {"a": "a:2", "b": "b:2"})
    assert "    image: a:2\n" in out
    assert "      image: not-this\n" in out
    assert "    image: 'b:2'\r\n" in out
    assert "  image: x\n" in out


def test_replace_with_no_changes_is_identity():
    text = "services:\n  a:\n    image: a:1\n"
    assert replace_images(text, {}) == text
