#!/usr/bin/env python3
"""
WebSecScan - Dynamic Web Application Security Testing Engine

Main entry point for the command line.
"""

import sys
import click
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from websecscan.config import ALL_MODULES  # noqa: E402


SEVERITY_COLORS = {
    'critical': 'red',
    'high': 'red',
    'medium': 'yellow',
    'low': 'green',
    'info': 'blue',
}


@click.group()
@click.version_option(version='1.0.0', prog_name='WebSecScan')
def cli():
    """WebSecScan - Conservative Web Application Security Scanner"""
    pass


@cli.command()
@click.argument('url')
@click.option('--modules', '-m', multiple=True,
              type=click.Choice(ALL_MODULES),
              help='Test runners to use (default: all)')
@click.option('--depth', default=2, show_default=True, help='Maximum crawl depth (1-5)')
@click.option('--pages', default=50, show_default=True, help='Maximum pages to crawl (1-200)')
@click.option('--rate-limit', default=1000, show_default=True, help='Milliseconds between requests (100-5000)')
@click.option('--timeout', default=10000, show_default=True, help='Per-request timeout in ms (5000-30000)')
@click.option('--scan-timeout', default=1800, show_default=True, help='Whole-scan deadline in seconds')
@click.option('--max-requests', default=500, show_default=True, help='Emergency brake request budget')
@click.option('--ignore-robots', is_flag=True, help='Do not honor robots.txt (needs --i-have-authorization)')
@click.option('--i-have-authorization', 'authorized', is_flag=True,
              help='Confirm you are authorized to test the target beyond robots.txt')
@click.option('--robots-fail-closed', is_flag=True, help='Treat an unreachable robots.txt as disallow-all')
@click.option('--allow-external', is_flag=True, help='Follow links to other origins')
@click.option('--sitemap', is_flag=True, help='Seed the crawl from /sitemap.xml')
@click.option('--header', '-H', multiple=True, help='Session header "Name: value"')
@click.option('--cookie', '-c', multiple=True, help='Session cookie "name=value"')
@click.option('--insecure', is_flag=True, help='Skip TLS certificate verification')
@click.option('--output', '-o', help='Write the JSON report to this file')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
def scan(url, modules, depth, pages, rate_limit, timeout, scan_timeout, max_requests, ignore_robots,
         authorized, robots_fail_closed, allow_external, sitemap, header, cookie, insecure, output, verbose):
    """Run a security scan against a target URL."""
    import asyncio
    import json
    import logging

    from websecscan.config import BaseConfig, ScanConfig
    from websecscan.exceptions import ConfigurationError
    from websecscan.scanner.core.engine import ScannerEngine
    from websecscan.scanner.core.events import ScanEventChannel

    try:
        session_headers = _parse_pairs(header, ':')
        session_cookies = _parse_pairs(cookie, '=')
    except click.BadParameter as e:
        click.secho(f"Error: {e}", fg='red', err=True)
        sys.exit(2)

    config = ScanConfig(
        max_depth=depth,
        max_pages=pages,
        rate_limit=rate_limit,
        timeout=timeout,
        scan_timeout=scan_timeout,
        max_requests=max_requests,
        respect_robots_txt=not ignore_robots,
        robots_override_consent=ignore_robots and authorized,
        robots_fail_open=not robots_fail_closed,
        allow_external_links=allow_external,
        parse_sitemap=sitemap,
        verify_ssl=not insecure,
        session_headers=session_headers or None,
        session_cookies=session_cookies or None,
        scan_modules=list(modules) if modules else None
    )

    click.echo(f"""
    WebSecScan CLI Scanner
    ----------------------
    Target:     {url}
    Modules:    {', '.join(config.scan_modules)}
    Max Depth:  {depth}
    Max Pages:  {pages}
    Rate Limit: {rate_limit}ms
    """)

    logging.getLogger('websecscan').setLevel('DEBUG' if verbose else BaseConfig.LOG_LEVEL)

    events = ScanEventChannel()

    def on_event(event):
        if verbose:
            click.echo(f"  [{event.level.value}] {event.message}")
        elif event.level.value in ('warning', 'error'):
            click.secho(f"  [{event.level.value}] {event.message}", fg='yellow')

    events.subscribe(on_event)
    engine = ScannerEngine(config=config, events=events)

    try:
        report = asyncio.run(engine.scan(url))
    except ConfigurationError as e:
        click.secho(f"Configuration error: {e}", fg='red', err=True)
        sys.exit(2)
    except KeyboardInterrupt:
        click.secho("\nScan interrupted", fg='yellow', err=True)
        sys.exit(130)

    click.echo("-" * 50)
    click.echo(f"Status: {report.status.value}")
    if report.state and report.state.abort_reason:
        click.echo(f"Reason: {report.state.abort_reason}")

    for finding in report.findings:
        color = SEVERITY_COLORS.get(finding.severity.value, 'white')
        click.secho(f"  [{finding.severity.value.upper()}] {finding.rule_id} {finding.title}", fg=color)
        click.echo(f"      {finding.location}")

    if output:
        with open(output, 'w') as f:
            json.dump(report.to_dict(), f, indent=2)
        click.echo(f"Report saved to: {output}")

    # Print summary
    counts = report.severity_counts
    click.echo("\n" + "=" * 50)
    click.echo("FINDING SUMMARY")
    click.echo("=" * 50)
    click.secho(f"  Critical: {counts['critical']}", fg='red')
    click.secho(f"  High:     {counts['high']}", fg='red')
    click.secho(f"  Medium:   {counts['medium']}", fg='yellow')
    click.secho(f"  Low:      {counts['low']}", fg='green')
    click.secho(f"  Info:     {counts['info']}", fg='blue')
    click.echo("-" * 50)
    click.echo(f"  Total:    {len(report.findings)}")

    if report.status.value == 'failed':
        sys.exit(1)


def _parse_pairs(values, separator):
    """Turn ("a: b", ...) into {"a": "b"}."""
    pairs = {}
    for value in values:
        if separator not in value:
            raise click.BadParameter(f"expected 'name{separator}value', got {value!r}")
        name, _, rest = value.partition(separator)
        pairs[name.strip()] = rest.strip()
    return pairs


@cli.command()
@click.option('--port', default=5001, help='Port to bind to')
def demo(port):
    """Start the vulnerable demo application for testing."""
    click.echo("Starting vulnerable demo application...")
    click.echo(f"Demo app available at: http://127.0.0.1:{port}")

    from tests.vulnerable_app import create_vulnerable_app
    app = create_vulnerable_app()
    app.run(host='127.0.0.1', port=port, debug=False)


if __name__ == '__main__':
    cli()
