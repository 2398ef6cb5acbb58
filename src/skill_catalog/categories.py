"""Controlled category vocabulary used by every classifier."""

from __future__ import annotations

from dataclasses import dataclass

FALLBACK_CATEGORY = "productivity"


@dataclass(frozen=True)
class Category:
    slug: str
    name: str
    description: str
    keywords: tuple[str, ...]


CATEGORIES: tuple[Category, ...] = (
    # Development workflow
    Category(
        "git",
        "Git & Version Control",
        "Git operations, commit helpers, branch management",
        ("git", "commit", "branch", "merge", "rebase", "version control", "changelog"),
    ),
    Category(
        "code-generation",
        "Code Generation",
        "Generate code, boilerplate, scaffolding",
        ("generate", "scaffold", "boilerplate", "template", "create", "init"),
    ),
    Category(
        "refactoring",
        "Refactoring",
        "Code restructuring and optimization",
        ("refactor", "restructure", "optimize", "clean", "improve", "modernize"),
    ),
    Category(
        "debugging",
        "Debugging",
        "Find and fix bugs, error analysis",
        ("debug", "fix", "error", "bug", "trace", "diagnose", "troubleshoot"),
    ),
    # Code quality
    Category(
        "code-review",
        "Code Review",
        "Automated code review and analysis",
        ("review", "analyze", "lint", "check", "inspect", "audit"),
    ),
    Category(
        "testing",
        "Testing",
        "Unit tests, integration tests, test automation",
        ("test", "unit", "integration", "e2e", "spec", "coverage", "mock"),
    ),
    Category(
        "security",
        "Security",
        "Security scanning and vulnerability detection",
        ("security", "vulnerability", "scan", "audit", "owasp", "penetration"),
    ),
    Category(
        "performance",
        "Performance",
        "Performance profiling and optimization",
        ("performance", "optimize", "profile", "benchmark", "speed", "memory"),
    ),
    # Documentation
    Category(
        "documentation",
        "Documentation",
        "Generate and maintain documentation",
        ("doc", "readme", "api", "comment", "jsdoc", "typedoc", "swagger"),
    ),
    Category(
        "i18n",
        "Internationalization",
        "Localization and translation tools",
        ("i18n", "l10n", "translate", "locale", "language", "internationalization"),
    ),
    # API & data
    Category(
        "api",
        "API Development",
        "API design, documentation, and testing",
        ("api", "rest", "graphql", "openapi", "swagger", "endpoint", "http"),
    ),
    Category(
        "database",
        "Database",
        "Database management and optimization",
        ("database", "sql", "query", "migration", "schema", "orm", "prisma", "drizzle"),
    ),
    Category(
        "data-processing",
        "Data Processing",
        "Data transformation and analysis",
        ("data", "transform", "parse", "json", "csv", "xml", "format"),
    ),
    # Frontend
    Category(
        "ui-components",
        "UI Components",
        "UI component generation and styling",
        ("ui", "component", "css", "style", "design", "tailwind", "react", "vue", "svelte"),
    ),
    Category(
        "accessibility",
        "Accessibility",
        "Accessibility testing and improvements",
        ("a11y", "accessibility", "aria", "wcag", "screen reader"),
    ),
    # DevOps & infrastructure
    Category(
        "devops",
        "DevOps",
        "CI/CD, deployment, infrastructure",
        ("devops", "ci", "cd", "deploy", "docker", "kubernetes", "terraform", "ansible"),
    ),
    Category(
        "monitoring",
        "Monitoring",
        "Application monitoring and observability",
        ("monitor", "log", "trace", "metric", "alert", "observability"),
    ),
    # Utilities
    Category(
        "file-operations",
        "File Operations",
        "File manipulation and management",
        ("file", "directory", "folder", "copy", "move", "rename", "search"),
    ),
    Category(
        "automation",
        "Automation",
        "Task automation and scripting",
        ("automate", "script", "task", "workflow", "batch", "cron"),
    ),
    Category(
        FALLBACK_CATEGORY,
        "Productivity",
        "General productivity tools",
        ("productivity", "tool", "helper", "utility", "assistant"),
    ),
)

CATEGORY_SLUGS: frozenset[str] = frozenset(c.slug for c in CATEGORIES)
