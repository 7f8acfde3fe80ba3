"""Shared fixtures: a small backlog tree written to ``tmp_path``."""

import json
from pathlib import Path

import pytest


AUTH_SLUG = "001-feat-user-auth"
FIX_SLUG = "002-fix-typo"
DOCS_SLUG = "003-chore-docs"

AUTH_INDEX = """<!-- METADATA -->

```yaml
work: User auth
assignee: ""
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

Let users sign in.

<!-- TASKS -->

- [001-setup-repo](001-setup-repo.md)
- [002-add-login](002-add-login.md)
"""

SETUP_TASK = """<!-- METADATA -->

```yaml
task: Setup repo
status: done
priority: 1
dep: []
assignee: ""
requiresHumanReview: false
expiresAt: null
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

## Description

Create the repository.

<!-- ACCEPTANCE -->

## Acceptance criteria

- [x] Repository exists
"""

LOGIN_TASK = """<!-- METADATA -->

```yaml
task: Add login
status: open
priority: 2
dep: ["001"]
assignee: ""
requiresHumanReview: false
expiresAt: null
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

## Description

Build the login form.

<!-- ACCEPTANCE -->

## Acceptance criteria

- [ ] Login form renders
- [x] Password is hashed
- [ ] Errors are shown
"""

FIX_INDEX = """<!-- METADATA -->

```yaml
work: Fix typo
assignee: alice
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

Header typo.

<!-- TASKS -->

- [001-fix-header](001-fix-header.md)
"""

FIX_TASK = """<!-- METADATA -->

```yaml
task: Fix header
status: in-progress
priority: 1
dep: []
assignee: alice
requiresHumanReview: true
expiresAt: null
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

## Description

The header says "Wellcome".

<!-- ACCEPTANCE -->

## Acceptance criteria

- [ ] Header reads "Welcome"
"""

DOCS_INDEX = """<!-- METADATA -->

```yaml
work: Docs
assignee: ""
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

Write the docs.

<!-- TASKS -->

- [001-write-readme](001-write-readme.md)
"""

README_TASK = """<!-- METADATA -->

```yaml
task: Write readme
status: plan
priority: 1
dep: []
assignee: ""
requiresHumanReview: true
expiresAt: null
```

<!-- /METADATA -->

<!-- DESCRIPTION -->

## Description

Explain installation.

<!-- ACCEPTANCE -->

## Acceptance criteria

- [ ] Installation section
"""

MANIFEST = {
    "specVersion": "4.0.0",
    "updatedAt": "2026-01-01T00:00:00Z",
    "items": [
        {
            "slug": AUTH_SLUG,
            "path": f"work/{AUTH_SLUG}",
            "status": "in-progress",
            "tasks": [
                {"tid": "001", "file": "001-setup-repo.md", "title": "Setup repo", "status": "done", "assignee": ""},
                {"tid": "002", "file": "002-add-login.md", "title": "Add login", "status": "open", "assignee": ""},
            ],
        },
        {
            "slug": FIX_SLUG,
            "path": f"work/{FIX_SLUG}",
            "status": "in-progress",
            "tasks": [
                {"tid": "001", "file": "001-fix-header.md", "title": "Fix header", "status": "in-progress", "assignee": "alice"},
            ],
        },
        {
            "slug": DOCS_SLUG,
            "path": f"work/{DOCS_SLUG}",
            "status": "open",
            "tasks": [
                {"tid": "001", "file": "001-write-readme.md", "title": "Write readme", "status": "plan", "assignee": ""},
            ],
        },
    ],
}

SAMPLE_FILES = {
    f"work/{AUTH_SLUG}/index.md": AUTH_INDEX,
    f"work/{AUTH_SLUG}/001-setup-repo.md": SETUP_TASK,
    f"work/{AUTH_SLUG}/002-add-login.md": LOGIN_TASK,
    f"work/{FIX_SLUG}/index.md": FIX_INDEX,
    f"work/{FIX_SLUG}/001-fix-header.md": FIX_TASK,
    f"work/{DOCS_SLUG}/index.md": DOCS_INDEX,
    f"work/{DOCS_SLUG}/001-write-readme.md": README_TASK,
    "manifest.json": json.dumps(MANIFEST, indent=2) + "\n",
}

LOGIN = f"work/{AUTH_SLUG}/002-add-login.md"
SETUP = f"work/{AUTH_SLUG}/001-setup-repo.md"
FIX = f"work/{FIX_SLUG}/001-fix-header.md"
README = f"work/{DOCS_SLUG}/001-write-readme.md"


def write_tree(root: Path, files: dict) -> Path:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def project_dir(tmp_path):
    """A project directory holding ``.backlogmd`` with the sample tree."""
    write_tree(tmp_path / ".backlogmd", SAMPLE_FILES)
    return tmp_path


@pytest.fixture
def backlog_dir(project_dir):
    """The ``.backlogmd`` directory of the sample project."""
    return project_dir / ".backlogmd"


@pytest.fixture
def bare_backlog_dir(tmp_path):
    """The sample tree without a manifest."""
    files = {path: content for path, content in SAMPLE_FILES.items() if path != "manifest.json"}
    return write_tree(tmp_path / ".backlogmd", files)
