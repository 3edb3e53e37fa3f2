#!/usr/bin/env python3
"""
Rate acquisition CLI.

Sessions, quotes, bulk exports, scrapes and ratebook imports for the
funder portals.

Usage:
    # Log in manually in a browser and keep the session
    python acquire.py capture-session --provider lex

    # Log in with RATEFEED_<PROVIDER>_USERNAME / _PASSWORD
    python acquire.py login --provider ogilvie

    # Quote one Lex vehicle
    python acquire.py quote --provider lex --manufacturer-id 12 --model-id 345 \\
        --variant-id 6789 --term 36 --mileage 10000

    # Quote a list of vehicles (JSON list of quote requests)
    python acquire.py batch --provider lex --file requests.json

    # Ogilvie bulk export, imported into the rate store
    python acquire.py export --provider ogilvie --term 36 --mileage 10000

    # Fleet Marque discount scrape
    python acquire.py scrape --provider fleet_marque --make toyota --make kia

    # Import a downloaded ratebook (auto detects the funder from its headers)
    python acquire.py import --provider venus --file venus.xlsx
    python acquire.py import --provider ald --file ald_ch.csv --contract-type CH
    python acquire.py import --file unknown.xlsx

    # Session and import status
    python acquire.py status
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

import ratefeed.providers  # noqa: F401
from ratefeed.core import (
    ContractType,
    Credentials,
    ImportStatus,
    PaymentPlan,
    Priority,
    QuoteRequest,
    RateImporter,
    RateStore,
    RatefeedError,
    ScrapeQueue,
    SessionStore,
    StopSignal,
    VehicleIdentity,
    contract_type_from_string,
    create_client,
    default_matcher,
    get_provider_config,
    list_providers,
    capture_session,
    format_money_minor,
    run_batch,
    run_bulk_export,
    run_scrape,
    run_single_quote,
)
from ratefeed.providers import (
    ExportConfig,
    RATEBOOK_PARSERS,
    ScrapeConfig,
    detect_ratebook_parser,
    get_ratebook_parser,
)

logger = logging.getLogger(__name__)


def _contract_type(value: str) -> ContractType:
    contract_type = contract_type_from_string(value)
    if contract_type is None:
        raise argparse.ArgumentTypeError(f"Unknown contract type: {value}")
    return contract_type


class ProgressBar:
    """Render RunProgress snapshots on a tqdm bar."""

    def __init__(self, desc: str):
        self.bar = tqdm(desc=desc, unit="step")

    def __call__(self, progress):
        if progress.total and self.bar.total != progress.total:
            self.bar.total = progress.total
        self.bar.n = progress.current_index
        postfix = progress.current_stage.value
        if progress.current_make:
            postfix += f" {progress.current_make}"
        if progress.vehicles_found:
            postfix += f" ({progress.vehicles_found} found)"
        self.bar.set_postfix_str(postfix)
        self.bar.refresh()

    def close(self):
        self.bar.close()


def print_quote(result):
    rate = result.rate
    print(f"\n--- Quote {result.quote_id or ''} ---")
    print(f"Vehicle:         {rate.display_name}")
    print(f"CAP code:        {rate.cap_code or '-'}")
    print(f"Term / mileage:  {rate.term}m / {rate.annual_mileage:,} miles")
    print(f"Monthly rental:  {format_money_minor(rate.total_rental_minor)}")
    print(f"Initial payment: {format_money_minor(rate.initial_payment_minor)}")
    if rate.estimated_fields:
        print(f"Estimated:       {', '.join(rate.estimated_fields)}")


def cmd_capture_session(args):
    """Open a browser, wait for a manual login and store the session."""
    print(f"\n=== Capture Session: {args.provider} ===")
    print(f"Log in within {args.timeout} seconds.\n")
    try:
        session = capture_session(args.provider, SessionStore(), timeout=args.timeout)
    except RatefeedError as e:
        logger.error(f"Session capture failed: {e}")
        return 1
    print(f"Saved session {session.session_id}, expires {session.expires_at:%Y-%m-%d %H:%M} UTC")
    return 0


def cmd_save_session(args):
    """Store a session captured elsewhere (browser extension export)."""
    try:
        with open(args.file) as f:
            capture = json.load(f)
        config = get_provider_config(args.provider)
        session = SessionStore().save_captured(args.provider, capture, ttl=config.session.ttl_hours)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read {args.file}: {e}")
        return 1
    except RatefeedError as e:
        logger.error(f"Session rejected: {e}")
        return 1
    print(f"Saved {args.provider} session {session.session_id}")
    return 0


def cmd_login(args):
    """Log in with credentials from the environment."""
    credentials = Credentials.from_env(args.provider)
    if credentials is None:
        prefix = f"RATEFEED_{args.provider.upper()}"
        print(f"Error: set {prefix}_USERNAME and {prefix}_PASSWORD")
        return 1
    try:
        session = SessionStore().login(args.provider, credentials)
    except RatefeedError as e:
        logger.error(f"Login failed: {e}")
        return 1
    print(f"Logged in to {args.provider}, session {session.session_id}")
    return 0


def cmd_quote(args):
    """Quote a single vehicle."""
    try:
        request = QuoteRequest(
            vehicle=VehicleIdentity(
                manufacturer_id=args.manufacturer_id,
                model_id=args.model_id,
                variant_id=args.variant_id,
                cap_code=args.cap_code,
            ),
            term=args.term,
            annual_mileage=args.mileage,
            contract_type=args.contract_type,
            payment_plan=PaymentPlan(args.payment_plan),
        )
    except ValueError as e:
        logger.error(f"Invalid quote request: {e}")
        return 1

    try:
        result = run_single_quote(args.provider, request)
    except RatefeedError as e:
        logger.error(f"Quote failed: {e}")
        return 1
    print_quote(result)
    return 0


def cmd_batch(args):
    """Quote every request in a JSON file."""
    try:
        with open(args.file) as f:
            payloads = json.load(f)
        requests_ = [QuoteRequest.model_validate(p) for p in payloads]
    except (OSError, ValueError) as e:
        logger.error(f"Could not load requests from {args.file}: {e}")
        return 1

    print(f"\n=== Batch Quote: {args.provider} ({len(requests_)} vehicles) ===\n")
    stop = StopSignal()
    bar = tqdm(total=len(requests_), desc=f"{args.provider} | quotes", unit="quote")

    def on_progress(completed, total, last):
        bar.update(1)

    try:
        if args.queue:
            result = _run_queued(args, payloads, on_progress, stop)
        else:
            result = run_batch(args.provider, requests_, on_progress=on_progress, stop=stop)
    except KeyboardInterrupt:
        stop.stop("interrupted")
        logger.warning("Interrupted")
        return 1
    except RatefeedError as e:
        logger.error(f"Batch failed: {e}")
        return 1
    finally:
        bar.close()

    print("\n--- Results ---")
    print(f"Succeeded: {result.success_count}")
    print(f"Failed:    {result.error_count}")
    print(f"Skipped:   {result.total - result.attempted}")
    if result.aborted:
        print(f"Aborted:   {result.abort_reason}")
    for error in result.sample_errors:
        print(f"  ! {error}")

    if args.output:
        rates = [r.rate.model_dump(mode='json') for r in result.results]
        with open(args.output, 'w') as f:
            json.dump(rates, f, indent=2, default=str)
        print(f"\nSaved {len(rates)} rates to {args.output}")
    return 0 if not result.aborted else 1


def _run_queued(args, payloads, on_progress, stop):
    """Queue the requests and work through everything pending for the provider."""
    queue = ScrapeQueue()
    added = queue.add_batch(args.provider, payloads, priority=Priority[args.priority.upper()])
    print(f"Queued {added} new items, {queue.get_pending_count(args.provider)} pending")

    with create_client(args.provider, SessionStore()) as client:
        return queue.process(
            args.provider,
            lambda payload: client.quote(QuoteRequest.model_validate(payload)),
            policy=client.policy,
            on_progress=on_progress,
            stop=stop,
            limit=args.max_items,
        )


def cmd_export(args):
    """Run a bulk export and import the result."""
    try:
        config = ExportConfig(
            contract_type=args.contract_type,
            contract_term=args.term,
            annual_mileage=args.mileage,
            manufacturer_ids=args.manufacturer_id or [],
        )
    except ValueError as e:
        logger.error(f"Invalid export settings: {e}")
        return 1

    print(f"\n=== Bulk Export: {args.provider} ===")
    print(f"Term: {config.contract_term} months, mileage: {config.annual_mileage:,}\n")
    bar = ProgressBar(f"{args.provider} | export")
    stop = StopSignal()
    try:
        summary = run_bulk_export(
            args.provider,
            config,
            store=RateStore(),
            matcher=default_matcher(),
            on_progress=bar,
            stop=stop,
        )
    except KeyboardInterrupt:
        stop.stop("interrupted")
        return 1
    except RatefeedError as e:
        logger.error(f"Export failed: {e}")
        return 1
    finally:
        bar.close()

    batch = summary.import_batch
    print("\n--- Results ---")
    print(f"Batch:     {summary.batch_id}")
    print(f"Rows:      {summary.rows_or_vehicles_found}")
    if batch:
        print(f"Stored:    {batch.success_rows}")
        print(f"Errors:    {batch.error_rows}")
        print(f"Unmatched: {batch.unmatched_rows}")
    return 0


def cmd_scrape(args):
    """Scrape a portal's listings."""
    config = ScrapeConfig(makes=args.make or [])
    print(f"\n=== Scrape: {args.provider} ===")
    print(f"Makes: {', '.join(config.makes) or 'all'}\n")
    bar = ProgressBar(f"{args.provider} | makes")
    stop = StopSignal()
    try:
        summary = run_scrape(args.provider, config, store=RateStore(), on_progress=bar, stop=stop)
    except KeyboardInterrupt:
        stop.stop("interrupted")
        return 1
    except RatefeedError as e:
        logger.error(f"Scrape failed: {e}")
        return 1
    finally:
        bar.close()

    print(f"\nScraped {summary.rows_or_vehicles_found} vehicles into {summary.batch_id}")
    return 0


def cmd_import(args):
    """Import a ratebook file."""
    path = Path(args.file)
    try:
        content = path.read_bytes()
    except OSError as e:
        logger.error(f"Could not read {path}: {e}")
        return 1

    if args.provider == 'auto':
        try:
            parser = detect_ratebook_parser(content, path.name)
        except RatefeedError as e:
            logger.error(f"Could not detect the ratebook format of {path.name}: {e}")
            return 1
        print(f"Detected provider: {parser.provider.value}")
    else:
        parser = get_ratebook_parser(args.provider)
    importer = RateImporter(RateStore(), default_matcher())
    print(f"\n=== Import: {parser.provider.value} <- {path.name} ===\n")
    try:
        batch = importer.import_content(parser, content, args.contract_type, file_name=path.name, force=args.force)
    except RatefeedError as e:
        logger.error(f"Import failed: {e}")
        return 1

    print("--- Results ---")
    print(f"Batch:       {batch.id}")
    print(f"Status:      {batch.status.value}")
    print(f"Rows:        {batch.total_rows}")
    print(f"Stored:      {batch.success_rows}")
    print(f"Errors:      {batch.error_rows}")
    print(f"Unmatched:   {batch.unmatched_rows}")
    print(f"CAP codes:   {batch.unique_cap_codes}")
    for error in batch.error_log[:10]:
        print(f"  ! {error}")
    return 0 if batch.status == ImportStatus.COMPLETED else 1


def cmd_match_stats(args):
    """Show vehicle match counts by status."""
    stats = default_matcher().match_stats(args.provider)
    print(f"\n=== Match Stats: {args.provider or 'all providers'} ===\n")
    for status, count in stats.items():
        print(f"{status:<12} {count}")
    return 0


def cmd_status(args):
    """Show session validity and the latest import per provider."""
    sessions = SessionStore().status()
    store = RateStore()

    print("\n=== Sessions ===\n")
    for provider, info in sessions.items():
        if info['valid']:
            print(f"{provider:<14} valid, {info['minutes_remaining']} min remaining")
        else:
            print(f"{provider:<14} no valid session")

    print("\n=== Latest Imports ===\n")
    for provider in sessions:
        batches = [b for b in store.list_batches(provider) if b.is_latest]
        for batch in batches:
            print(f"{provider:<14} {batch.contract_type.value:<6} {batch.id}  "
                  f"{batch.success_rows} rates  {batch.started_at:%Y-%m-%d %H:%M}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Funder rate acquisition: sessions, quotes, exports, scrapes and imports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')
    providers = list_providers()

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--provider', '-p', required=True, choices=providers,
                        help='Provider portal')

    capture = subparsers.add_parser('capture-session', parents=[common],
                                    help='Capture a session from a manual browser login')
    capture.add_argument('--timeout', type=int, default=300,
                         help='Seconds to wait for login (default: 300)')
    capture.set_defaults(func=cmd_capture_session)

    save = subparsers.add_parser('save-session', parents=[common],
                                 help='Store a captured session from a JSON file')
    save.add_argument('--file', '-f', required=True,
                      help='Capture JSON with cookies, csrfToken and profile')
    save.set_defaults(func=cmd_save_session)

    login = subparsers.add_parser('login', parents=[common],
                                  help='Log in with credentials from the environment')
    login.set_defaults(func=cmd_login)

    quote = subparsers.add_parser('quote', parents=[common], help='Quote one vehicle')
    quote.add_argument('--manufacturer-id', help='Portal manufacturer id')
    quote.add_argument('--model-id', help='Portal model id')
    quote.add_argument('--variant-id', help='Portal variant id')
    quote.add_argument('--cap-code', help='CAP code (Drivalia)')
    quote.add_argument('--term', type=int, default=36, help='Term in months (default: 36)')
    quote.add_argument('--mileage', type=int, default=10000, help='Annual mileage (default: 10000)')
    quote.add_argument('--contract-type', type=_contract_type, default=ContractType.CHNM,
                       help='CH, CHNM, PCH, PCHNM or SS (default: CHNM)')
    quote.add_argument('--payment-plan', default=PaymentPlan.SPREAD_3_DOWN.value,
                       choices=[p.value for p in PaymentPlan],
                       help='Payment plan (default: spread_3_down)')
    quote.set_defaults(func=cmd_quote)

    batch = subparsers.add_parser('batch', parents=[common], help='Quote a list of vehicles')
    batch.add_argument('--file', '-f', required=True, help='JSON list of quote requests')
    batch.add_argument('--output', '-o', help='Save quoted rates to JSON file')
    batch.add_argument('--queue', action='store_true',
                       help='Go through the persistent queue (resumable)')
    batch.add_argument('--priority', default='normal', choices=[p.name.lower() for p in Priority],
                       help='Queue priority for new items')
    batch.add_argument('--max-items', '-n', type=int, help='Maximum queued items to process')
    batch.set_defaults(func=cmd_batch)

    export = subparsers.add_parser('export', parents=[common], help='Bulk export and import')
    export.add_argument('--term', type=int, default=36, help='Contract term (default: 36)')
    export.add_argument('--mileage', type=int, default=10000, help='Annual mileage (default: 10000)')
    export.add_argument('--contract-type', type=_contract_type, default=ContractType.CHNM,
                        help='Contract type (default: CHNM)')
    export.add_argument('--manufacturer-id', type=int, action='append',
                        help='Restrict to a manufacturer id (repeatable)')
    export.set_defaults(func=cmd_export)

    scrape = subparsers.add_parser('scrape', parents=[common], help='Scrape portal listings')
    scrape.add_argument('--make', action='append', help='Make slug (repeatable, default: all)')
    scrape.set_defaults(func=cmd_scrape)

    imp = subparsers.add_parser('import', help='Import a ratebook file')
    imp.add_argument('--provider', '-p', default='auto',
                     choices=[p.value for p in RATEBOOK_PARSERS] + ['auto'],
                     help='Ratebook format (default: auto, detected from the file)')
    imp.add_argument('--file', '-f', required=True, help='CSV or XLSX ratebook')
    imp.add_argument('--contract-type', type=_contract_type, default=ContractType.CHNM,
                     help='Contract type of the file (default: CHNM)')
    imp.add_argument('--force', action='store_true', help='Re-import even if already imported')
    imp.set_defaults(func=cmd_import)

    stats = subparsers.add_parser('match-stats', help='Vehicle match counts')
    stats.add_argument('--provider', '-p', help='Filter by provider')
    stats.set_defaults(func=cmd_match_stats)

    status = subparsers.add_parser('status', help='Session and import status')
    status.set_defaults(func=cmd_status)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
