"""
Folder-batching planner strategy.

Deterministic alternative to the swarm planner for very large
repositories: files are grouped by top-level folder, oversized folders are
split, small folders are bundled, and the resulting chunks become worker
tasks. No reasoning-service call is made.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from audit_swarm.config import get_settings
from audit_swarm.models.audit import FileEntry, SnapshotView, SwarmPlan, WorkerTask
from audit_swarm.services.prompts import TIER_BRIEFS, Tier

logger = logging.getLogger("chunking")
settings = get_settings()

FOLDER_PRIORITY = {
    "src": 10, "app": 10, "auth": 10,
    "lib": 9, "api": 9, "supabase": 9, "functions": 9, "server": 9,
    "pages": 8, "components": 8, "services": 8, "middleware": 8,
    "hooks": 7, "utils": 7, "helpers": 7,
    "config": 6,
    "types": 5, "_root": 5,
    "misc": 4, "tests": 4, "__tests__": 4, "test": 4,
    "styles": 3,
    "public": 2, "assets": 2,
    "docs": 1,
}


def estimate_tokens(size: int) -> int:
    return max(1, size // 4)


def folder_priority(folder: str) -> int:
    return FOLDER_PRIORITY.get(folder.lower(), 5)


@dataclass
class Chunk:
    id: str
    folder: str
    files: List[FileEntry] = field(default_factory=list)
    tokens: int = 0
    priority: int = 5


def _top_folder(path: str) -> str:
    return path.split("/", 1)[0] if "/" in path else "_root"


def split_large_folder(folder: str, files: List[FileEntry], max_tokens: int) -> List[Chunk]:
    """Smallest files first, cutting a new chunk whenever the budget would overflow."""
    chunks: List[Chunk] = []
    current = Chunk(id=f"{folder}-1", folder=folder, priority=folder_priority(folder))
    for f in sorted(files, key=lambda f: (f.size, f.path)):
        tokens = estimate_tokens(f.size)
        if current.files and current.tokens + tokens > max_tokens:
            chunks.append(current)
            current = Chunk(id=f"{folder}-{len(chunks) + 1}", folder=folder, priority=folder_priority(folder))
        current.files.append(f)
        current.tokens += tokens
    if current.files:
        chunks.append(current)
    return chunks


def merge_small_folders(folders: Dict[str, List[FileEntry]], max_tokens: int) -> List[Chunk]:
    chunks: List[Chunk] = []
    current = Chunk(id="misc-1", folder="misc", priority=folder_priority("misc"))
    for folder in sorted(folders, key=lambda name: -folder_priority(name)):
        files = folders[folder]
        tokens = sum(estimate_tokens(f.size) for f in files)
        if current.files and current.tokens + tokens > max_tokens:
            chunks.append(current)
            current = Chunk(id=f"misc-{len(chunks) + 1}", folder="misc", priority=folder_priority("misc"))
        current.files.extend(files)
        current.tokens += tokens
    if current.files:
        chunks.append(current)
    return chunks


def chunk_files(
    files: List[FileEntry],
    max_tokens: Optional[int] = None,
    merge_below: Optional[int] = None,
) -> List[Chunk]:
    max_tokens = max_tokens or settings.CHUNK_MAX_TOKENS
    merge_below = merge_below or settings.CHUNK_MERGE_BELOW_TOKENS
    if not files:
        return []

    total = sum(estimate_tokens(f.size) for f in files)
    if total <= max_tokens:
        return [Chunk(id="full-1", folder="_all", files=list(files), tokens=total, priority=10)]

    grouped: Dict[str, List[FileEntry]] = {}
    for f in files:
        grouped.setdefault(_top_folder(f.path), []).append(f)

    chunks: List[Chunk] = []
    small: Dict[str, List[FileEntry]] = {}
    for folder, folder_files in grouped.items():
        tokens = sum(estimate_tokens(f.size) for f in folder_files)
        if tokens > max_tokens:
            chunks.extend(split_large_folder(folder, folder_files, max_tokens))
        elif tokens < merge_below:
            small[folder] = folder_files
        else:
            chunks.append(Chunk(
                id=f"{folder}-1", folder=folder, files=list(folder_files),
                tokens=tokens, priority=folder_priority(folder),
            ))

    if small:
        chunks.extend(merge_small_folders(small, max_tokens))

    chunks.sort(key=lambda c: (-c.priority, c.id))
    return chunks


def fold_to_limit(chunks: List[Chunk], limit: int) -> List[Chunk]:
    """Keep the `limit` highest-priority chunks; spread the rest onto the lightest ones."""
    if len(chunks) <= limit:
        return chunks
    kept, overflow = chunks[:limit], chunks[limit:]
    for extra in overflow:
        target = min(kept, key=lambda c: c.tokens)
        target.files.extend(extra.files)
        target.tokens += extra.tokens
    return kept


def plan_by_folders(snapshot: SnapshotView, tier: Tier, max_tasks: Optional[int] = None) -> SwarmPlan:
    limit = max_tasks or settings.PLANNER_MAX_TASKS
    chunks = fold_to_limit(chunk_files(list(snapshot.files)), limit)
    brief = TIER_BRIEFS[tier]

    order = {p: n for n, p in enumerate(snapshot.paths)}
    tasks = []
    for i, chunk in enumerate(chunks, start=1):
        label = "whole repository" if chunk.folder == "_all" else f"{chunk.folder} files"
        paths = sorted((f.path for f in chunk.files), key=lambda p: order[p])
        tasks.append(WorkerTask(
            id=f"task_{i}",
            role=f"{tier.value.replace('_', ' ').title()} Reviewer ({label})",
            instruction=f"Review the assigned {label} against the following checklist.\n{brief}",
            targetFiles=paths,
        ))

    logger.info(f"[Chunking] {snapshot.file_count} files → {len(tasks)} folder tasks for {snapshot.owner}/{snapshot.repo}")
    return SwarmPlan(
        focusArea=f"Folder-batched {tier.value} review",
        tasks=tasks,
        strategy="folders",
    )
