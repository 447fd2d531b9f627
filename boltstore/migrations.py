"""Schema migrations that rewrite stored project objects in place."""

from __future__ import annotations

import json
from typing import Any

from .kv import KeyValueStore

_MIGRATIONS_BUCKET = b"migrations"


class BucketMigration:
    """Rewrites every object with prefix object_prefix in every project.

    Subclasses set object_prefix and override migrate, which changes an
    object in place and tells whether it must be written back.
    """

    object_prefix = ""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    @staticmethod
    def _bucket_name(project_id: str, object_prefix: str) -> bytes:
        return f"project__{object_prefix}_{project_id}".encode("utf-8")

    def project_ids(self) -> list[str]:
        """Return the stored project IDs as they appear in the keys."""
        with self.kv.view() as tx:
            bucket = tx.bucket(b"project")
            if bucket is None:
                return []
            return [key.decode("utf-8") for key, _ in bucket.items()]

    def get_objects(self, project_id: str, object_prefix: str) -> dict[str, dict[str, Any]]:
        """Return the project's objects of one kind, keyed by object ID."""
        with self.kv.view() as tx:
            bucket = tx.bucket(self._bucket_name(project_id, object_prefix))
            if bucket is None:
                return {}
            objects: dict[str, dict[str, Any]] = {}
            for key, body in bucket.items():
                document = json.loads(body)
                if not isinstance(document, dict):
                    raise ValueError("stored object must be a JSON object")
                objects[key.decode("utf-8")] = document
            return objects

    def set_object(
        self, project_id: str, object_prefix: str, object_id: str, obj: dict[str, Any]
    ) -> None:
        """Store one object of the project, creating its bucket when needed."""
        with self.kv.update() as tx:
            bucket = tx.create_bucket_if_not_exists(self._bucket_name(project_id, object_prefix))
            bucket.put(object_id, json.dumps(obj, sort_keys=True, separators=(",", ":")))

    def migrate(self, obj: dict[str, Any]) -> bool:
        """Change obj in place; return True when it has to be stored again."""
        return False

    def apply(self) -> None:
        """Run the migration over all projects."""
        if not self.object_prefix:
            return
        loaded = {
            project_id: self.get_objects(project_id, self.object_prefix)
            for project_id in self.project_ids()
        }
        for project_id, objects in loaded.items():
            for object_id, obj in objects.items():
                if self.migrate(obj):
                    self.set_object(project_id, self.object_prefix, object_id, obj)


class Migration2_8_28(BucketMigration):
    """Splits a "url#branch" repository URL into URL and branch."""

    object_prefix = "repository"

    def migrate(self, obj: dict[str, Any]) -> bool:
        url = obj["git_url"]
        if not isinstance(url, str):
            raise TypeError("git_url must be a string")
        branch = "master"
        parts = url.split("#")
        if len(parts) > 1:
            url, branch = parts[0], parts[1]
        obj["git_url"] = url
        obj["git_branch"] = branch
        return True


class Migration2_8_40(BucketMigration):
    """Renames the template field "alias" to "name"."""

    object_prefix = "template"

    def migrate(self, obj: dict[str, Any]) -> bool:
        obj["name"] = obj.pop("alias", None)
        return True


class Migration2_8_91(BucketMigration):
    """Replaces the project user "admin" flag with a role."""

    object_prefix = "user"

    def migrate(self, obj: dict[str, Any]) -> bool:
        obj["role"] = "owner" if obj.get("admin") is True else "manager"
        obj.pop("admin", None)
        return True


class Migration2_10_12(BucketMigration):
    """Marks every schedule active."""

    object_prefix = "schedule"

    def migrate(self, obj: dict[str, Any]) -> bool:
        obj["active"] = True
        return True


class Migration2_10_16(BucketMigration):
    """Gives templates without an app the "ansible" app."""

    object_prefix = "template"

    def migrate(self, obj: dict[str, Any]) -> bool:
        if obj.get("app") is not None and obj.get("app") != "":
            return False
        obj["app"] = "ansible"
        return True


_MIGRATIONS: dict[str, type[BucketMigration]] = {
    "2.8.26": Migration2_8_28,
    "2.8.40": Migration2_8_40,
    "2.8.91": Migration2_8_91,
    "2.10.12": Migration2_10_12,
    "2.10.16": Migration2_10_16,
}


def is_migration_applied(kv: KeyValueStore, version: str) -> bool:
    """Tell whether the migration of version has been recorded."""
    with kv.view() as tx:
        bucket = tx.bucket(_MIGRATIONS_BUCKET)
        if bucket is None:
            return False
        return bucket.get(version) is not None


def apply_migration(kv: KeyValueStore, version: str) -> None:
    """Run the data migration for version, if any, and record it as applied."""
    migration = _MIGRATIONS.get(version)
    if migration is not None:
        migration(kv).apply()
    with kv.update() as tx:
        bucket = tx.create_bucket_if_not_exists(_MIGRATIONS_BUCKET)
        bucket.put(version, json.dumps({"version": version}))