"""eksops command line."""

import argparse
import logging
import signal
import sys
from pathlib import Path

from botocore.exceptions import ClientError, NoCredentialsError
from rich.panel import Panel
from rich.table import Table

from eksops import __version__, console
from eksops.config import load_settings
from eksops.context import ConfirmationPolicy, RunContext
from eksops.errors import EksOpsError
from eksops.orchestrator import EXIT_FATAL, Orchestrator, RunReport, display_plan, display_summary
from eksops.pipelines import PROVISION, TEARDOWN, get_pipeline
from eksops.pipelines.common import capture_outputs

logger = logging.getLogger(__name__)


def _common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--profile', help='AWS profile to use')
    parser.add_argument('--region', help='AWS region')
    parser.add_argument('--cluster-name', help='EKS cluster name')
    parser.add_argument('--config', type=Path, help='JSON settings file (default: ./eksops.json)')
    parser.add_argument('--project-root', type=Path, help='Directory holding the Terraform directories')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')


def _run_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--confirm', choices=[p.value for p in ConfirmationPolicy],
                        default=ConfirmationPolicy.PROMPT.value,
                        help='How confirmation gates are answered (default: prompt)')
    parser.add_argument('--force', action='store_true', help='Skip confirmation (same as --confirm auto)')
    parser.add_argument('--dry-run', action='store_true', help='Show the stages that would run')
    parser.add_argument('--only', nargs='+', metavar='STAGE', help='Run only these stages')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='eksops', description="EKS DevOps environment provisioning")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    sub = parser.add_subparsers(dest='command', required=True)

    install = sub.add_parser('install', help='Provision a pipeline')
    install.add_argument('pipeline', choices=list(PROVISION))
    reinstall = install.add_mutually_exclusive_group()
    reinstall.add_argument('--reinstall', action='store_true', default=None,
                           help='Replace existing Helm releases (and their volumes)')
    reinstall.add_argument('--keep-existing', dest='reinstall', action='store_false',
                           help='Keep existing Helm releases')
    install.add_argument('--test-pvc', action='store_true', help='Run the EBS PVC smoke test')
    _common_flags(install)
    _run_flags(install)

    uninstall = sub.add_parser('uninstall', help='Tear down a pipeline')
    uninstall.add_argument('pipeline', choices=list(TEARDOWN))
    _common_flags(uninstall)
    _run_flags(uninstall)

    listing = sub.add_parser('list', help='List pipelines and their stages')
    _common_flags(listing)

    status = sub.add_parser('status', help='Show the last run report')
    _common_flags(status)

    credentials = sub.add_parser('credentials', help='Assume the EKS admin role and print export lines')
    credentials.add_argument('--role-arn', help='Role to assume (default: Terraform output role_arn)')
    _common_flags(credentials)
    return parser


def _settings(args):
    return load_settings(
        config_path=args.config,
        overrides={
            'profile': args.profile,
            'region': args.region,
            'cluster_name': args.cluster_name,
            'project_root': args.project_root,
        },
    )


def _policy(args) -> ConfirmationPolicy:
    if args.force:
        return ConfirmationPolicy.AUTO_APPROVE
    return ConfirmationPolicy(args.confirm)


# ─────────────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────────────

def cmd_run(args, teardown: bool) -> int:
    settings = _settings(args)
    options = {}
    if not teardown:
        options = {'reinstall': args.reinstall, 'test_pvc': args.test_pvc}
    pipeline = get_pipeline(args.pipeline, settings, options, teardown=teardown).select(args.only)
    policy = _policy(args)

    console.console.print(Panel.fit(
        f"[bold cyan]eksops {'uninstall' if teardown else 'install'} {pipeline.name}[/bold cyan]\n"
        f"[dim]{pipeline.description}[/dim]",
        border_style="red" if teardown else "cyan",
    ))
    console.console.print(f"[dim]Region: {settings.region}  Cluster: {settings.cluster_name}  "
                          f"Confirm: {policy.value}[/dim]")
    console.console.print()

    if args.dry_run:
        display_plan(pipeline, policy)
        console.console.print("\n[yellow]Dry run: nothing was changed[/yellow]")
        return 0

    context = RunContext(settings=settings, policy=policy, options=options)

    def on_term(signum, frame):
        context.cancel.set()
    signal.signal(signal.SIGTERM, on_term)

    report = Orchestrator(context).run(pipeline)
    report.save(settings.report_path)
    return report.exit_code


def cmd_list(args) -> int:
    settings = _settings(args)
    for teardown, registry in ((False, PROVISION), (True, TEARDOWN)):
        table = Table(title="eksops uninstall" if teardown else "eksops install", border_style="cyan")
        table.add_column("Pipeline", style="bold")
        table.add_column("Stages")
        table.add_column("Description", style="dim")
        for name in registry:
            pipeline = get_pipeline(name, settings, {'test_pvc': True}, teardown=teardown)
            table.add_row(name, ", ".join(s.name for s in pipeline.stages), pipeline.description)
        console.console.print(table)
    return 0


def cmd_status(args) -> int:
    settings = _settings(args)
    report = RunReport.load(settings.report_path)
    if report is None:
        console.console.print("[dim]No runs recorded yet[/dim]")
        return 0
    console.console.print(f"[dim]Started {report.started_at}, finished {report.finished_at}[/dim]")
    display_summary(report)
    return report.exit_code


def cmd_credentials(args) -> int:
    settings = _settings(args)
    context = RunContext(settings=settings)
    role_arn = args.role_arn or capture_outputs(context, settings.infra_dir, 'role_arn')['role_arn']
    if not role_arn:
        console.error(f"No role ARN given and no role_arn output in {settings.infra_dir}", stderr=True)
        return EXIT_FATAL
    try:
        credentials = context.aws.assume_role(role_arn, settings.admin_session_name, settings.session_duration)
    except (ClientError, NoCredentialsError) as e:
        console.error(f"Could not assume {role_arn}: {e}", stderr=True)
        return EXIT_FATAL
    # Plain print: meant for eval "$(eksops credentials)"
    print(f"# {role_arn}, expires {credentials.expires_at.isoformat()}")
    for name, value in credentials.as_env().items():
        print(f"export {name}={value}")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    console.setup_logging(args.verbose)

    try:
        if args.command == 'install':
            code = cmd_run(args, teardown=False)
        elif args.command == 'uninstall':
            code = cmd_run(args, teardown=True)
        elif args.command == 'list':
            code = cmd_list(args)
        elif args.command == 'status':
            code = cmd_status(args)
        else:
            code = cmd_credentials(args)
    except EksOpsError as e:
        console.error(str(e), stderr=True)
        sys.exit(EXIT_FATAL)
    except KeyError as e:
        console.error(e.args[0] if e.args else str(e), stderr=True)
        sys.exit(EXIT_FATAL)
    except KeyboardInterrupt:
        console.console.print("\n[yellow]Interrupted. Run again to resume.[/yellow]")
        sys.exit(EXIT_FATAL)
    sys.exit(code)


if __name__ == '__main__':
    main()
