"""
File-index filtering and complexity fingerprinting.

Everything here works from paths, sizes and sampled file contents; nothing
talks to the network.
"""

import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Tuple

EXCLUDED_DIRS = {
    "node_modules", ".git", "dist", "build", "out", "coverage", "__pycache__",
    "venv", ".venv", "env", ".next", ".nuxt", ".cache", "vendor", "target",
    ".idea", ".vscode", ".pytest_cache", ".mypy_cache", ".turbo", "bower_components",
}

BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".svg", ".tiff",
    ".pdf", ".zip", ".gz", ".tar", ".tgz", ".rar", ".7z", ".jar", ".war",
    ".exe", ".dll", ".so", ".dylib", ".bin", ".class", ".o", ".a", ".pyc",
    ".woff", ".woff2", ".ttf", ".eot", ".otf", ".mp3", ".mp4", ".wav", ".mov",
    ".avi", ".webm", ".sqlite", ".db", ".lock",
}

LANGUAGE_BY_EXT = {
    ".py": "Python", ".js": "JavaScript", ".jsx": "JavaScript", ".mjs": "JavaScript",
    ".ts": "TypeScript", ".tsx": "TypeScript", ".go": "Go", ".rs": "Rust",
    ".java": "Java", ".kt": "Kotlin", ".rb": "Ruby", ".php": "PHP", ".cs": "C#",
    ".c": "C", ".h": "C", ".cpp": "C++", ".hpp": "C++", ".swift": "Swift",
    ".vue": "Vue", ".svelte": "Svelte", ".sql": "SQL", ".sh": "Shell",
    ".html": "HTML", ".css": "CSS", ".scss": "SCSS",
}

SOURCE_EXTENSIONS = {
    ".py", ".js", ".jsx", ".mjs", ".ts", ".tsx", ".go", ".rs", ".java", ".kt",
    ".rb", ".php", ".cs", ".c", ".cpp", ".swift", ".vue", ".svelte",
}

FRONTEND_EXTENSIONS = (".tsx", ".jsx", ".vue", ".svelte", ".html", ".css", ".scss")
BACKEND_EXTENSIONS = (".py", ".go", ".rs", ".java", ".php", ".rb", ".kt", ".cs")
CONFIG_EXTENSIONS = (".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".env", ".env.example", ".env.local")

# Regex heuristics shared across languages
FUNCTION_PATTERNS = [
    re.compile(r"^\s*(async\s+)?def\s+", re.MULTILINE),
    re.compile(r"\bfunction\s+\w*\s*\(", re.MULTILINE),
    re.compile(r"(const|let|var)\s+\w+\s*=\s*(async\s*)?\([^)]*\)\s*=>", re.MULTILINE),
    re.compile(r"^\s*func\s+", re.MULTILINE),
    re.compile(r"^\s*(pub\s+)?fn\s+", re.MULTILINE),
]
IMPORT_PATTERNS = [
    re.compile(r"^\s*(from\s+\S+\s+)?import\s+", re.MULTILINE),
    re.compile(r"\brequire\(\s*['\"]", re.MULTILINE),
    re.compile(r"^\s*use\s+[\w:]+", re.MULTILINE),
]
COMMENT_PATTERNS = [
    re.compile(r"^\s*#(?!!)", re.MULTILINE),
    re.compile(r"^\s*//", re.MULTILINE),
    re.compile(r"/\*", re.MULTILINE),
]


def _ext(path: str) -> str:
    name = path.rsplit("/", 1)[-1].lower()
    if name.startswith(".env"):
        return ".env"
    dot = name.rfind(".")
    return name[dot:] if dot > 0 else ""


def is_indexable(path: str) -> bool:
    parts = path.split("/")
    if any(part in EXCLUDED_DIRS for part in parts[:-1]):
        return False
    return _ext(path) not in BINARY_EXTENSIONS


def build_file_index(tree: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Blobs only, filtered, ordered by path."""
    entries = []
    for item in tree.get("tree") or []:
        if item.get("type") != "blob":
            continue
        path = item.get("path") or ""
        if not path or not is_indexable(path):
            continue
        entries.append({"path": path, "size": int(item.get("size") or 0), "type": "file"})
    entries.sort(key=lambda e: e["path"])
    return entries


def categorize(paths: Iterable[str]) -> Tuple[Dict[str, int], Dict[str, bool]]:
    counts = Counter()
    flags = {
        "has_migrations": False,
        "has_docker": False,
        "has_env_files": False,
        "has_tests": False,
        "is_monorepo": False,
    }

    for path in paths:
        lower = "/" + path.lower()
        name = lower.rsplit("/", 1)[-1]

        if name.endswith(".sql") or "/migrations/" in lower or "/sql/" in lower:
            counts["sql"] += 1
        if "/migrations/" in lower or "/alembic/" in lower:
            flags["has_migrations"] = True
        if name.endswith(CONFIG_EXTENSIONS) or any(k in name for k in ("config", "settings", "conf")):
            counts["config"] += 1
        if name.endswith(FRONTEND_EXTENSIONS) or "/components/" in lower or "/pages/" in lower:
            counts["frontend"] += 1
        if name.endswith(BACKEND_EXTENSIONS) or any(
            seg in lower for seg in ("/server/", "/api/", "/routes/", "/controllers/", "/services/")
        ):
            counts["backend"] += 1
        if "/test" in lower or "/spec" in lower or "__tests__" in lower or "test" in name or "spec" in name:
            counts["test"] += 1
            flags["has_tests"] = True
        if "dockerfile" in name or "docker-compose" in name or "/docker/" in lower:
            flags["has_docker"] = True
        if name.startswith(".env"):
            flags["has_env_files"] = True
        if "/packages/" in lower or "/apps/" in lower or name in ("pnpm-workspace.yaml", "lerna.json", "turbo.json"):
            flags["is_monorepo"] = True

    categories = {key: counts.get(key, 0) for key in ("sql", "config", "frontend", "backend", "test")}
    return categories, flags


def detect_capabilities(paths: Iterable[str]) -> Dict[str, bool]:
    caps = {
        "supabase": False,
        "firebase": False,
        "prisma": False,
        "drizzle": False,
        "graphql": False,
        "hasura": False,
        "convex": False,
    }
    for path in paths:
        lower = path.lower()
        if "supabase/config.toml" in lower or "supabase/functions" in lower or "supabase/migrations" in lower:
            caps["supabase"] = True
        if lower.endswith("firebase.json") or lower.endswith(".firebaserc"):
            caps["firebase"] = True
        if lower.endswith("schema.prisma"):
            caps["prisma"] = True
        if "drizzle.config." in lower:
            caps["drizzle"] = True
        if lower.endswith((".graphql", ".gql")) or "/graphql/" in lower:
            caps["graphql"] = True
        if lower.startswith("hasura/") or "/hasura/" in lower:
            caps["hasura"] = True
        if lower.startswith("convex/"):
            caps["convex"] = True
    return caps


def count_symbols(content: str) -> Dict[str, int]:
    return {
        "functions": sum(len(p.findall(content)) for p in FUNCTION_PATTERNS),
        "imports": sum(len(p.findall(content)) for p in IMPORT_PATTERNS),
        "comments": sum(len(p.findall(content)) for p in COMMENT_PATTERNS),
    }


def select_sample(file_index: List[Dict[str, Any]], limit: int, max_size: int = 100_000) -> List[str]:
    """Smallest-first source files, spread across top-level folders."""
    candidates = [
        f for f in file_index
        if _ext(f["path"]) in SOURCE_EXTENSIONS and 0 < f.get("size", 0) <= max_size
    ]
    by_folder: Dict[str, List[Dict[str, Any]]] = {}
    for f in sorted(candidates, key=lambda f: (f["size"], f["path"])):
        top = f["path"].split("/", 1)[0] if "/" in f["path"] else "_root"
        by_folder.setdefault(top, []).append(f)

    picked: List[str] = []
    while len(picked) < limit and any(by_folder.values()):
        for folder in sorted(by_folder):
            if by_folder[folder] and len(picked) < limit:
                picked.append(by_folder[folder].pop(0)["path"])
    return picked


def language_mix(file_index: List[Dict[str, Any]], languages: Dict[str, int]) -> Dict[str, float]:
    """Percentages from the origin's language bytes, or from extensions when unavailable."""
    weights: Dict[str, float] = {}
    if languages:
        weights = {k: float(v) for k, v in languages.items()}
    else:
        for f in file_index:
            lang = LANGUAGE_BY_EXT.get(_ext(f["path"]))
            if lang:
                weights[lang] = weights.get(lang, 0.0) + max(f.get("size", 0), 1)
    total = sum(weights.values())
    if total <= 0:
        return {}
    return {k: round(v / total * 100, 2) for k, v in sorted(weights.items(), key=lambda kv: -kv[1])}


def build_fingerprint(
    file_index: List[Dict[str, Any]],
    languages: Dict[str, int],
    samples: Dict[str, str],
) -> Dict[str, Any]:
    paths = [f["path"] for f in file_index]
    total_size = sum(f.get("size", 0) for f in file_index)
    categories, flags = categorize(paths)
    mix = language_mix(file_index, languages)

    symbol_totals = Counter()
    for content in samples.values():
        symbol_totals.update(count_symbols(content))

    return {
        "file_count": len(file_index),
        "total_size_kb": round(total_size / 1024, 1),
        "token_estimate": total_size // 4,
        "language_mix": mix,
        "primary_language": next(iter(mix), None),
        "categories": categories,
        **flags,
        "capabilities": detect_capabilities(paths),
        "function_count": symbol_totals.get("functions", 0),
        "import_count": symbol_totals.get("imports", 0),
        "comment_count": symbol_totals.get("comments", 0),
        "sampled_files": len(samples),
    }
