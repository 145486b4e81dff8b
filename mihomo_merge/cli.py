"""
mihomo-merge command line

    mihomo-merge merge -s https://example.com/sub.yaml
    mihomo-merge merge -s ./extra.yaml --base-config base-config.yaml --stdout
    mihomo-merge merge -s https://example.com/base64.txt --subscription-allow-base64
    mihomo-merge manage custom add --domain cache.nixos.org --kind suffix --via proxy
    mihomo-merge manage check --domain github.com
    mihomo-merge init
    mihomo-merge test --config ~/.config/mihomo-merge/output/config.yaml
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import MergeError
from .fetch import ensure_resources, make_session, subscription_from_input
from .interpreter import ParseOptions
from .model import ClashConfig
from .pipeline import load_document, load_sources, run_generation
from .rules import (
    DEFAULT_DEV_RULE_VIA,
    CustomRule,
    build_dev_rules,
    check_domain,
    custom_rule_lines,
    dev_domains,
    prepend_rules,
    remove_custom_rules,
    resolve_dev_rules_via,
)
from .storage import (
    AppPaths,
    ensure_default_template,
    load_app_config,
    load_subscription_list,
    save_app_config,
    save_subscription_list,
)
from .tweaks import (
    apply_external_controller,
    apply_fake_ip_bypass,
    apply_fake_ip_filter_mode,
    ensure_cluster_dns_bypass,
    ensure_route_excludes,
)

logger = logging.getLogger(__name__)

LOG_ENV = 'MIHOMO_MERGE_LOG'


class UsageError(Exception):
    """Bad combination of command-line inputs"""


def setup_logging(level: Optional[str]):
    level = (level or os.environ.get(LOG_ENV) or 'WARNING').upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )


# ==================== merge ====================

def _fake_ip_patterns(args) -> List[str]:
    return list(args.fake_ip_bypass) + list(args.fake_ip_filter_add)


def _apply_post_processing(merged: ClashConfig, args, custom_rules: List[CustomRule]) -> Optional[List[str]]:
    """Dev rules, quick rules and DNS/tun/controller tweaks, in place.
    Returns the dev rule list when it was built."""
    dev_rules = None
    if args.dev_rules or args.dev_rules_show:
        via = resolve_dev_rules_via(args.dev_rules_via, DEFAULT_DEV_RULE_VIA, merged)
        if via != args.dev_rules_via and args.dev_rules:
            logger.warning("--dev-rules-via %r not found in config; using %r", args.dev_rules_via, via)
        dev_rules = build_dev_rules(via)
        if args.dev_rules:
            prepend_rules(merged, dev_rules)

    # Quick custom rules take precedence over everything else
    if custom_rules:
        prepend_rules(merged, custom_rule_lines(custom_rules))

    if args.external_controller_url or args.external_controller_port or args.external_controller_secret is not None:
        apply_external_controller(
            merged,
            host=args.external_controller_url,
            port=args.external_controller_port,
            secret=args.external_controller_secret,
        )

    bypass = _fake_ip_patterns(args)
    apply_fake_ip_bypass(merged, bypass)
    if args.fake_ip_filter_mode:
        apply_fake_ip_filter_mode(merged, args.fake_ip_filter_mode, bypass_used=bool(bypass))
    ensure_cluster_dns_bypass(merged)
    ensure_route_excludes(merged, args.k8s_cidr_exclude)
    return dev_rules


def _print_summary(merged: ClashConfig, args, output_path: Path, dev_added: int):
    dns = merged.extension.get('dns')
    dns = dns if isinstance(dns, dict) else {}
    filters = dns.get('fake-ip-filter')
    controller = merged.extension.get('external-controller')

    print("dry-run summary:")
    print(f"- proxies: {len(merged.proxy_names())}, groups: {len(merged.proxy_group_names())}, rules: {len(merged.rules)}")
    print(
        f"- fake-ip: mode={dns.get('fake-ip-filter-mode', '<none>')}, "
        f"filter+={len(_fake_ip_patterns(args))} (requested), "
        f"total={len(filters) if isinstance(filters, list) else '<unknown>'}"
    )
    print(f"- dev-rules: enabled={str(args.dev_rules).lower()}, via={args.dev_rules_via}, added={dev_added}")
    print(f"- external-controller: {controller or '<unset>'}, secret={'set' if merged.extension.get('secret') else 'unset'}")
    print(f"- output: would write to {output_path} (suppressed by --dry-run)")


def cmd_merge(args) -> int:
    paths = AppPaths.from_env()
    paths.ensure_runtime_dirs()
    app_cfg = load_app_config(paths)

    session = make_session(args.subscription_ua)
    ensure_resources(session, paths)
    options = ParseOptions(allow_base64=args.subscription_allow_base64)

    ensure_default_template(paths)
    template_path = paths.resolve_template(args.template) if args.template else paths.default_template_path
    template = load_document(template_path, 'template')

    base = None
    if args.base_config:
        base = load_document(paths.resolve_base_config(args.base_config), 'base config')
    elif paths.base_config_path.exists():
        base = load_document(paths.base_config_path, 'base config')

    subs_file = Path(args.subscriptions_file).expanduser() if args.subscriptions_file else paths.subscriptions_file
    sub_list = load_subscription_list(subs_file)

    adhoc = [subscription_from_input(i, value) for i, value in enumerate(args.subscriptions)]
    report = load_sources(sub_list.items + adhoc, session, paths, options)
    used_url = next((s.url for s in reversed(sub_list.items + adhoc) if s.url and s.id in report.loaded), None)

    if not report.configs and not args.subscriptions and not sub_list.items:
        if not args.use_last:
            raise UsageError("no subscription provided. Pass -s/--subscription or use --use-last to reuse the cached last URL.")
        if not app_cfg.last_subscription_url:
            raise UsageError("--use-last set but no cached last subscription URL found. Merge once with -s/--subscription first.")
        logger.info("using cached last subscription URL %s", app_cfg.last_subscription_url)
        last = subscription_from_input(0, app_cfg.last_subscription_url)
        report = load_sources([last], session, paths, options)
        if report.skipped:
            raise UsageError(f"failed to load cached subscription {last.url}: {report.skipped[0][1]}")
        used_url = last.url

    result = run_generation(template, report, base)
    merged = result.config
    dev_rules = _apply_post_processing(merged, args, app_cfg.custom_rules)

    output_path = Path(args.output).expanduser() if args.output else paths.output_config_path

    if args.dry_run:
        _print_summary(merged, args, output_path, len(dev_rules) if (dev_rules and args.dev_rules) else 0)
    else:
        text = merged.to_yaml()
        if args.stdout:
            print(text)
        else:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(text, encoding='utf-8')
            print(f"merged config written to {output_path}")

    if dev_rules and args.dev_rules_show:
        for rule in dev_rules:
            print(f"dev-rule: {rule}", file=sys.stderr)

    if args.dry_run:
        return 0

    save_subscription_list(subs_file, sub_list)
    if used_url:
        app_cfg.last_subscription_url = used_url
        save_app_config(paths, app_cfg)
    return 0


# ==================== init ====================

def cmd_init(args) -> int:
    paths = AppPaths.from_env()
    paths.ensure_runtime_dirs()
    ensure_default_template(paths)
    print(f"Initialized at: {paths.config_dir}")
    print(f"  - templates: {paths.templates_dir}")
    print(f"  - output: {paths.output_config_path.parent}")
    print(f"  - cache: {paths.cache_dir}")
    return 0


# ==================== test ====================

def cmd_test(args) -> int:
    """Validate a generated config with `mihomo -t`"""
    paths = AppPaths.from_env()
    config = Path(args.config).expanduser() if args.config else paths.output_config_path
    workdir = Path(args.mihomo_dir).expanduser() if args.mihomo_dir else paths.config_dir
    if not config.exists():
        raise UsageError(f"config file not found: {config}")

    cmd = [args.mihomo_bin, '-d', str(workdir), '-f', str(config), '-m', '-t']
    logger.info("running %s", ' '.join(cmd))
    try:
        result = subprocess.run(cmd)
    except OSError as e:
        raise UsageError(f"failed to run {args.mihomo_bin}: {e}") from e

    if result.returncode != 0:
        print(f"error: mihomo config test failed (exit code: {result.returncode})", file=sys.stderr)
        return 1
    print(f"mihomo config test passed: {config}")
    return 0


# ==================== manage ====================

def cmd_cache(args) -> int:
    paths = AppPaths.from_env()
    cfg = load_app_config(paths)
    if args.action == 'show':
        print(f"last-subscription-url: {cfg.last_subscription_url or '<none>'}")
    else:
        cfg.last_subscription_url = None
        save_app_config(paths, cfg)
        print("cleared last-subscription-url")
    return 0


def cmd_custom(args) -> int:
    paths = AppPaths.from_env()
    cfg = load_app_config(paths)

    if args.action == 'add':
        rule = CustomRule(domain=args.domain, kind=args.kind, via=args.via)
        if rule in cfg.custom_rules:
            print("custom rule already exists")
        else:
            cfg.custom_rules.append(rule)
            save_app_config(paths, cfg)
            print("custom rule added")
    elif args.action == 'list':
        if not cfg.custom_rules:
            print("<no custom rules>")
        for line in custom_rule_lines(cfg.custom_rules):
            print(line)
    else:
        before = len(cfg.custom_rules)
        cfg.custom_rules = remove_custom_rules(cfg.custom_rules, args.domain, args.via)
        save_app_config(paths, cfg)
        print(f"removed {before - len(cfg.custom_rules)} rule(s)")
    return 0


def cmd_check(args) -> int:
    cfg = load_app_config(AppPaths.from_env())
    decision, _ = check_domain(args.domain, cfg.custom_rules)
    print(decision)
    return 0


def cmd_dev_list(args) -> int:
    domains = dev_domains()
    if args.format == 'json':
        print(json.dumps(domains, indent=2))
    elif args.format == 'yaml':
        print(yaml.safe_dump(domains, allow_unicode=True), end='')
    else:
        for domain in domains:
            print(domain)
    return 0


# ==================== Parser ====================

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog='mihomo-merge',
        description="Generate Mihomo/Clash configs by combining a template with one or more subscriptions.",
    )
    ap.add_argument('--log-level', help=f"logging level (default: ${LOG_ENV} or WARNING)")
    # Also accepted after the sub-command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--log-level', default=argparse.SUPPRESS, help=argparse.SUPPRESS)
    sub = ap.add_subparsers(dest='command', required=True)

    m = sub.add_parser('merge', parents=[common], help="merge subscriptions with a template")
    m.add_argument('--template', type=Path, help="template YAML (relative paths resolve under templates/)")
    m.add_argument('--base-config', type=Path, help="base config whose ports/rules/groups take precedence")
    m.add_argument('--subscriptions-file', help="subscription list JSON (default: <config>/subscriptions.json)")
    m.add_argument('-s', '--subscription', dest='subscriptions', action='append', default=[],
                   help="extra subscription URL or file path (repeatable)")
    out = m.add_mutually_exclusive_group()
    out.add_argument('--output', help="output config path (default: <config>/output/config.yaml)")
    out.add_argument('--stdout', action='store_true', help="print the merged config instead of writing it")
    m.add_argument('--use-last', action='store_true', help="reuse the last subscription URL when no source is given")
    m.add_argument('--subscription-ua', help="HTTP User-Agent used to fetch subscriptions")
    m.add_argument('--subscription-allow-base64', action='store_true',
                   help="also decode base64 and share-link (trojan/vmess/ss) subscriptions")
    m.add_argument('--dev-rules', action=argparse.BooleanOptionalAction, default=True,
                   help="prepend proxy rules for developer endpoints (default: on)")
    m.add_argument('--dev-rules-via', default=DEFAULT_DEV_RULE_VIA, help="proxy or group used by dev rules")
    m.add_argument('--dev-rules-show', action='store_true', help="print the dev rule list to stderr")
    m.add_argument('--external-controller-url', help="host/IP for external-controller")
    m.add_argument('--external-controller-port', type=int, help="port for external-controller")
    m.add_argument('--external-controller-secret', help="secret for the external controller API")
    m.add_argument('--fake-ip-bypass', action='append', default=[], help="pattern added to dns.fake-ip-filter")
    m.add_argument('--fake-ip-filter-add', action='append', default=[],
                   help="extra dns.fake-ip-filter entry, combined with --fake-ip-bypass")
    m.add_argument('--fake-ip-filter-mode', help="blacklist or whitelist")
    m.add_argument('--k8s-cidr-exclude', action='append', default=[], help="CIDR added to tun.route-exclude-address")
    m.add_argument('--dry-run', action='store_true', help="print a summary instead of writing output")
    m.set_defaults(func=cmd_merge)

    i = sub.add_parser('init', parents=[common], help="create config directories and seed the default template")
    i.set_defaults(func=cmd_init)

    t = sub.add_parser('test', parents=[common], help="validate a config with mihomo -t")
    t.add_argument('--mihomo-bin', default='mihomo', help="mihomo executable (default: mihomo)")
    t.add_argument('--config', help="config to test (default: <config>/output/config.yaml)")
    t.add_argument('--mihomo-dir', help="mihomo working directory (default: <config>)")
    t.set_defaults(func=cmd_test)

    manage = sub.add_parser('manage', parents=[common], help="cached state and quick rules").add_subparsers(dest='manage', required=True)

    c = manage.add_parser('cache', help="show or clear the cached last subscription URL")
    c.add_argument('action', choices=['show', 'clear'])
    c.set_defaults(func=cmd_cache)

    custom = manage.add_parser('custom', help="quick custom rules").add_subparsers(dest='action', required=True)
    add = custom.add_parser('add', help="add a custom rule")
    add.add_argument('--domain', required=True)
    add.add_argument('--via', required=True, help="proxy or group name (direct/reject accepted)")
    add.add_argument('--kind', default='suffix', help="domain|suffix|keyword (default: suffix)")
    custom.add_parser('list', help="list custom rules")
    remove = custom.add_parser('remove', help="remove custom rules for a domain")
    remove.add_argument('--domain', required=True)
    remove.add_argument('--via', help="only remove rules routed via this target")
    for p in custom.choices.values():
        p.set_defaults(func=cmd_custom)

    chk = manage.add_parser('check', help="tell whether a domain goes via proxy or direct")
    chk.add_argument('--domain', required=True)
    chk.set_defaults(func=cmd_check)

    dev = manage.add_parser('dev-list', help="list built-in dev domains")
    dev.add_argument('--format', choices=['text', 'yaml', 'json'], default='text')
    dev.set_defaults(func=cmd_dev_list)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\ncancelled", file=sys.stderr)
        return 130
    except (MergeError, UsageError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
