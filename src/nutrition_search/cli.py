from __future__ import annotations

import argparse
import logging
from typing import Optional

from rich.console import Console
from rich.table import Table

from .config import ServerConfig
from .errors import NutritionSearchError
from .models import CategoryFilter, ResolvedAnswer
from .resolver import build_resolver


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Answer nutrition questions against the smoothie menu catalog")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    query = sub.add_parser("query", help="Run one question through the full search pipeline")
    query.add_argument("text", help="What are you looking for?")
    query.add_argument("-k", "--top-k", type=int, default=10, help="Number of reranked results (default 10)")
    query.add_argument(
        "--category",
        default=CategoryFilter.ALL.value,
        choices=[choice.value for choice in CategoryFilter],
        help="Restrict results to one menu section",
    )
    query.add_argument("--size", help="Cup size for customization rules, e.g. large")
    query.add_argument(
        "--add-on",
        dest="add_ons",
        action="append",
        help="Add-on ingredient (repeatable)",
    )

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")
    return parser


def main(args: list[str] | None = None) -> None:
    parser = build_parser()
    opts = parser.parse_args(args=args)
    logging.basicConfig(level=getattr(logging, opts.log_level.upper(), logging.WARNING))

    if opts.command == "serve":
        import uvicorn

        uvicorn.run("nutrition_search.server:app", host=opts.host, port=opts.port, reload=opts.reload)
        return

    console = Console()
    try:
        resolver = build_resolver(ServerConfig())
        answer = resolver.resolve(
            opts.text,
            opts.top_k,
            opts.category,
            size=opts.size,
            add_ons=opts.add_ons,
        )
    except (NutritionSearchError, ValueError) as exc:
        console.print(f"[red]Search failed: {exc}[/]")
        raise SystemExit(1) from exc

    render_answer(console, answer)


def render_answer(console: Console, answer: ResolvedAnswer) -> None:
    if not answer.total:
        console.print(f"[yellow]No matches for '{answer.query}'.[/]")
        return

    table = Table(title=f"Results for '{answer.query}' ({answer.category.display_name})")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Size")
    table.add_column("Calories", justify="right")
    table.add_column("Protein (g)", justify="right")
    table.add_column("Rerank", justify="right")
    table.add_column("Rules")
    for rank, result in enumerate(answer.all_results, start=1):
        adjusted = result.customization
        nutrition = adjusted.nutrition if adjusted else result.flattened_nutrition()
        table.add_row(
            str(rank),
            result.name or result.id,
            result.category or "",
            (adjusted.size if adjusted else result.nutrition_size) or "-",
            _fmt(nutrition.get("calories")),
            _fmt(nutrition.get("protein")),
            f"{result.rerank_score:.3f}" if result.rerank_score is not None else "-",
            adjusted.applied_rules_label if adjusted else "",
        )
    console.print(table)

    top = answer.top_recommendation
    if top and top.customization and top.customization.dropped_add_ons:
        console.print(f"[yellow]Dropped add-ons: {', '.join(top.customization.dropped_add_ons)}[/]")
    if answer.ai_response:
        console.print()
        console.print(answer.ai_response)


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:g}"


if __name__ == "__main__":  # pragma: no cover
    main()
