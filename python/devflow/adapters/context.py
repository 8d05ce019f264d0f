"""Filesystem project context gathering."""

import asyncio
import logging
import os
from typing import Dict, List

from devflow.interfaces.collaborators import ProjectContext

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({
    ".git", ".hg", ".svn", ".venv", "venv", "env", "node_modules", "__pycache__",
    ".mypy_cache", ".pytest_cache", ".ruff_cache", ".tox", "dist", "build", ".devflow",
})

MANIFESTS = frozenset({
    "pyproject.toml", "setup.py", "setup.cfg", "requirements.txt", "package.json",
    "Cargo.toml", "go.mod", "pom.xml", "build.gradle", "Gemfile", "composer.json",
})


class FileSystemContextGatherer:
    def __init__(self, max_files: int = 5000):
        self.max_files = max_files

    async def gather_project_context(self, repo_root: str) -> ProjectContext:
        return await asyncio.to_thread(self._walk, repo_root)

    def _walk(self, repo_root: str) -> ProjectContext:
        if not os.path.isdir(repo_root):
            raise FileNotFoundError(f"Repository root does not exist: {repo_root}")

        files: List[str] = []
        languages: Dict[str, int] = {}
        manifests: Dict[str, str] = {}
        for dirpath, dirnames, filenames in os.walk(repo_root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for name in sorted(filenames):
                rel = os.path.relpath(os.path.join(dirpath, name), repo_root)
                if name in MANIFESTS:
                    manifests[rel] = name
                ext = os.path.splitext(name)[1].lstrip(".").lower()
                if ext:
                    languages[ext] = languages.get(ext, 0) + 1
                files.append(rel)
                if len(files) >= self.max_files:
                    logger.info("Context walk of %s stopped at %d files", repo_root, self.max_files)
                    return ProjectContext(repo_root=repo_root, files=files, languages=languages, manifests=manifests)
        return ProjectContext(repo_root=repo_root, files=files, languages=languages, manifests=manifests)
