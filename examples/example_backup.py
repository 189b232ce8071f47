"""
Example usage of the athena archiver.

Walks through init, two backups of a changing directory, listing, restore,
prune and garbage collection against an in-memory repository:
  python examples/example_backup.py
"""

import os
import tempfile
from datetime import datetime, timezone

from athena.config import EngineSettings
from athena.runtime import (
    init_repo,
    list_snapshots,
    run_backup,
    run_gc,
    run_prune,
    run_restore,
)


def main():
    """Demonstrate the backup workflow."""

    repo_url = "memory://example_repo"
    settings = EngineSettings(cache_dir=None)

    with tempfile.TemporaryDirectory() as tmpdir:
        source_dir = os.path.join(tmpdir, "source")
        os.makedirs(os.path.join(source_dir, "subdir"))

        with open(os.path.join(source_dir, "doc1.txt"), "w") as f:
            f.write("Important document 1\n" * 5000)
        with open(os.path.join(source_dir, "doc2.bin"), "wb") as f:
            f.write(os.urandom(512 * 1024))
        with open(os.path.join(source_dir, "subdir", "nested.txt"), "w") as f:
            f.write("Nested document\n" * 75)

        print(f"Source directory: {source_dir}")
        print(f"Repository URL: {repo_url}\n")

        print("[1] Initializing repository...")
        config = init_repo(repo_url, settings=settings)
        print(f"    repository id {config.repository_id[:8]}\n")

        print("[2] Creating first backup...")
        first = run_backup(repo_url, [source_dir], settings=settings)
        print(f"    snapshot {first.snapshot_id[:8]}: {first.chunks_new} chunks stored\n")

        print("[3] Modifying a file and creating second backup...")
        with open(os.path.join(source_dir, "doc1.txt"), "a") as f:
            f.write("Additional content added later\n" * 10)
        second = run_backup(repo_url, [source_dir], settings=settings)
        print(
            f"    snapshot {second.snapshot_id[:8]} (parent {second.manifest.parent_snapshot_id[:8]}): "
            f"{second.chunks_new} of {second.chunks_total} chunks were new\n"
        )

        print("[4] Listing snapshots...")
        for snap in list_snapshots(repo_url, settings=settings):
            created = datetime.fromtimestamp(snap.creation_time, tz=timezone.utc).isoformat()
            print(f"    {snap.snapshot_id[:8]}  {created}  {snap.file_count} files")
        print()

        restore_dir = os.path.join(tmpdir, "restore")
        print(f"[5] Restoring latest snapshot to {restore_dir}...")
        report = run_restore(repo_url, restore_dir, settings=settings)
        print(f"    {report.files_restored} files, {report.bytes_written} bytes\n")

        print("[6] Pruning the first snapshot and collecting garbage...")
        run_prune(repo_url, first.snapshot_id, settings=settings)
        gc_report = run_gc(repo_url, settings=settings)
        print(
            f"    removed {gc_report.chunks_removed} chunks, freed {gc_report.bytes_freed} bytes"
        )


if __name__ == "__main__":
    main()
