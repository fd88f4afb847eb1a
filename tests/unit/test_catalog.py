"""Unit tests for the playbook catalog."""


def _doc(playbook_id="svc", version="1"):
    return f"""---
id: {playbook_id}
title: Restart {playbook_id}
version: "{version}"
allowed_capabilities: [shell]
---
- name: restart
  actions:
    - capability: shell
      payload: systemctl restart {playbook_id}
"""


class TestPlaybookCatalog:
    """Tests for PlaybookCatalog."""

    def test_latest_version_by_default(self):
        """Test get without a version returns the highest one."""
        from Caps.Core.playbook.catalog import PlaybookCatalog
        from Caps.Core.playbook_parser import parse_playbook

        catalog = PlaybookCatalog()
        for version in ("1.9", "1.10", "1.2"):
            catalog.register(parse_playbook(_doc(version=version)))

        assert catalog.get("svc").version == "1.10"
        assert catalog.get("svc", "1.2").version == "1.2"
        assert catalog.get("svc", "2") is None
        assert catalog.get("other") is None
        assert len(catalog) == 3

    def test_register_replaces_same_version(self):
        """Test re-registering an id and version keeps one entry."""
        from Caps.Core.playbook.catalog import PlaybookCatalog
        from Caps.Core.playbook_parser import parse_playbook

        catalog = PlaybookCatalog()
        catalog.register(parse_playbook(_doc()))
        catalog.register(parse_playbook(_doc()))

        assert len(catalog) == 1

    def test_list(self):
        """Test list summarizes playbooks sorted by id and version."""
        from Caps.Core.playbook.catalog import PlaybookCatalog
        from Caps.Core.playbook_parser import parse_playbook

        catalog = PlaybookCatalog()
        catalog.register(parse_playbook(_doc("web")))
        catalog.register(parse_playbook(_doc("db")))

        assert catalog.list() == [
            {"id": "db", "title": "Restart db", "version": "1", "steps": 1},
            {"id": "web", "title": "Restart web", "version": "1", "steps": 1},
        ]

    def test_load_directory(self, tmp_path, postgres_playbook_doc):
        """Test valid documents load and invalid ones are reported."""
        from Caps.Core.playbook.catalog import PlaybookCatalog

        (tmp_path / "svc.md").write_text(_doc())
        (tmp_path / "postgres.yml").write_text(postgres_playbook_doc)
        (tmp_path / "broken.yaml").write_text("id: missing-everything\n")
        (tmp_path / "notes.txt").write_text("ignored")

        catalog = PlaybookCatalog()
        errors = catalog.load_directory(tmp_path)

        assert len(catalog) == 2
        assert len(errors) == 1
        assert errors[0].startswith("broken.yaml:")

    def test_missing_directory(self, tmp_path):
        """Test a missing directory is reported as an error."""
        from Caps.Core.playbook.catalog import PlaybookCatalog

        errors = PlaybookCatalog().load_directory(tmp_path / "nope")

        assert errors == [f"Playbook directory {tmp_path / 'nope'} does not exist"]
