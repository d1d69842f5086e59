"""
Listing Harvester - CLI Entry Point

Submit filter jobs, run them to completion and export the harvested listings.
"""

import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn

from harvester.config import config
from harvester.errors import FilterValidationError
from harvester.models import JobPriority
from harvester.service import HarvesterService
from harvester.webhooks.manager import WebhookEventType


console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging with rich handler."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def load_filters_from_file(filepath: str) -> List[Dict[str, Any]]:
    """Load one filter object or a list of them from a JSON file."""
    path = Path(filepath)
    if not path.exists():
        console.print(f"[red]File not found: {filepath}[/red]")
        sys.exit(1)

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {filepath}: {e}[/red]")
        sys.exit(1)

    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and all(isinstance(item, dict) for item in data):
        return data

    console.print("[red]Filters file must contain an object or a list of objects[/red]")
    sys.exit(1)


async def main_async(args: argparse.Namespace) -> None:
    """Async main function."""
    setup_logging(args.log_level)
    config.log_level = args.log_level

    filter_sets = load_filters_from_file(args.filters)

    config.queue.max_concurrent_jobs = args.concurrency
    config.storage.backend = args.storage
    if args.proxies:
        proxy_path = Path(args.proxies)
        if not proxy_path.exists():
            console.print(f"[red]Proxy file not found: {args.proxies}[/red]")
            sys.exit(1)
        config.proxy.enabled = True
        config.proxy.proxy_file = proxy_path

    console.print("\n[bold blue]Listing Harvester[/bold blue]")
    console.print(f"Jobs to submit: {len(filter_sets)}")
    console.print(f"Concurrency: {args.concurrency}")
    console.print(f"Storage: {args.storage}")
    console.print()

    service = HarvesterService.from_config(config)
    if args.proxies:
        console.print(f"[green]Loaded {service.proxy_rotator.size} proxies[/green]")

    await service.start()
    try:
        if args.webhook:
            endpoint = await service.webhooks.add_endpoint(args.webhook, args.events)
            console.print(f"[green]Webhook endpoint registered: {endpoint.id}[/green]")
            console.print(f"  Signing secret: {endpoint.secret}")

        job_ids = []
        for filters in filter_sets:
            try:
                job_id = await service.queue.submit(
                    filters,
                    priority=args.priority,
                    max_records=args.max_records,
                    enable_webhooks=bool(args.webhook),
                )
            except FilterValidationError as e:
                console.print(f"[red]Rejected filters: {e}[/red]")
                continue
            job_ids.append(job_id)

        if not job_ids:
            console.print("[yellow]No valid jobs to run[/yellow]")
            return

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Harvesting...", total=None)
            await service.orchestrator.run_until_idle()
            progress.update(task, description="Complete!")

        # Print per-job summary
        console.print("\n[bold]Jobs:[/bold]")
        for job_id in job_ids:
            job = await service.queue.get(job_id)
            colour = "green" if job.status.value == "COMPLETED" else "red"
            console.print(f"  [{colour}]{job.id}[/{colour}] {job.status.value}")
            if job.result:
                result = job.result
                console.print(
                    f"    pages: {result.pages_processed}  found: {result.records_found}  "
                    f"saved: {result.records_saved}  duplicates: {result.duplicates}  "
                    f"attempts: {result.attempts}  duration: {result.duration:.2f}s"
                )
            if job.error:
                console.print(f"    error: {job.error}")

        # Export results
        if args.export:
            export_path = await service.export_listings(args.export, args.output)
            console.print(f"\n[green]Exported listings to: {export_path}[/green]")

        # Print stats
        console.print("\n[bold]Final Statistics:[/bold]")
        for key, value in (await service.queue.get_stats()).items():
            console.print(f"  {key}: {value}")
        console.print(f"  circuit: {service.circuit_breaker.get_status().state.value}")
        console.print(f"  webhooks: {service.webhooks.get_stats()['deliveries']}")

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
    finally:
        await service.stop()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Listing Harvester - Rate-constrained business listing extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --filters filters.json
  %(prog)s --filters jobs.json --concurrency 2 --priority high
  %(prog)s --filters filters.json --export csv --output listings.csv
  %(prog)s --filters filters.json --webhook https://hooks.example.com/in --events job.completed
        """,
    )

    # Job source
    parser.add_argument(
        "--filters", "-f",
        required=True,
        help="JSON file with a filter object or a list of them",
    )
    parser.add_argument(
        "--priority",
        choices=[p.name.lower() for p in JobPriority],
        default="normal",
        help="Job priority (default: normal)",
    )
    parser.add_argument(
        "--max-records",
        type=int,
        default=None,
        help=f"Record cap per job (default: {config.queue.default_max_records})",
    )

    # Execution options
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=config.queue.max_concurrent_jobs,
        help=f"Concurrent jobs (default: {config.queue.max_concurrent_jobs})",
    )

    # Proxy options
    parser.add_argument(
        "--proxies", "-p",
        help="File containing proxy URLs (one per line)",
    )

    # Webhook options
    parser.add_argument(
        "--webhook",
        help="Endpoint URL to receive job events",
    )
    parser.add_argument(
        "--events",
        nargs="+",
        choices=[e.value for e in WebhookEventType],
        default=[WebhookEventType.JOB_COMPLETED.value, WebhookEventType.JOB_FAILED.value],
        help="Events to send to --webhook (default: job.completed job.failed)",
    )

    # Output options
    parser.add_argument(
        "--export",
        choices=["json", "jsonl", "csv"],
        help="Export harvested listings in this format",
    )
    parser.add_argument(
        "--output", "-o",
        help="Output filename (auto-generated if not specified)",
    )
    parser.add_argument(
        "--storage",
        choices=["memory", "sqlite"],
        default=config.storage.backend,
        help=f"Job and listing store (default: {config.storage.backend})",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    # Run async main
    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
