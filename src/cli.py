import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List

import qrcode

from shield_backend.config import ShieldConfig, apply_bridge, parse_bridge_type
from shield_backend.log import setup_logging
from shield_backend.models import Outcome, TransitionReport
from shield_backend.paths import ShieldPaths
from shield_backend.session import ShieldSession
from shield_backend.system import is_root, which


REQUIRED_BINARIES = ("ip", "iptables", "systemctl")

_MARKS = {
    Outcome.SUCCESS: "[+]",
    Outcome.SKIPPED: "[-]",
    Outcome.WARNING: "[!]",
    Outcome.FAILURE: "[ERREUR]",
}


# ---------------------------------------------------
# Helpers
# ---------------------------------------------------

def _load(args, lenient: bool = False):
    paths = ShieldPaths.default(args.home)
    paths.ensure()
    try:
        config = ShieldConfig.load(paths.config_file)
    except ValueError as e:
        if not lenient:
            raise
        # stop doit toujours pouvoir restaurer : on retombe sur les défauts
        print(f"[!] Configuration illisible ({e}), restauration avec les valeurs par défaut.")
        config = ShieldConfig(paths.config_file)
    setup_logging(paths.log_file, config.get("general", "log_level"), args.verbose)
    return paths, config


def _require_root(action: str) -> None:
    if not is_root():
        print(f"[ERREUR] '{action}' doit être lancé en root (sudo).")
        sys.exit(1)


def _check_binaries() -> None:
    for b in REQUIRED_BINARIES:
        try:
            which(b)
        except RuntimeError as e:
            print(f"[!] {e}")


def _print_report(title: str, report: TransitionReport) -> None:
    for name, r in report.results.items():
        mark = _MARKS[r.outcome]
        lines = r.errors or r.details or [r.outcome.value]
        for line in lines:
            print(f"{mark} {name:<9} {line}")

    issues = report.failures + report.warnings
    if issues:
        print(f"[!] {title} with {issues} issues (détails dans le journal).")
    else:
        print(f"[+] {title}.")


def _exit_code(reports: List[TransitionReport]) -> int:
    for r in reports:
        if r.interrupted is not None:
            return 128 + r.interrupted
    return 0


# ---------------------------------------------------
# Commande : start
# ---------------------------------------------------

def cmd_start(args):
    _require_root("start")
    paths, config = _load(args)
    _check_binaries()

    session = ShieldSession.build(config, paths)
    if session.state.running and not args.force:
        print("[!] Le bouclier est déjà actif. Utilise 'restart' (ou 'start --force').")
        return 0

    session.install_signal_handlers()
    print("[*] Activation du bouclier...")
    report = session.activate()
    _print_report("Shield activated", report)
    if report.interrupted is not None:
        print("[!] Interrompu : état réseau d'origine restauré.")
        return _exit_code([report])

    if args.foreground:
        print("[*] Premier plan : Ctrl+C pour tout restaurer.")
        report = session.wait_for_signal()
        _print_report("Shield deactivated", report)
        return _exit_code([report])
    return 0


# ---------------------------------------------------
# Commande : stop
# ---------------------------------------------------

def cmd_stop(args):
    _require_root("stop")
    paths, config = _load(args, lenient=True)

    session = ShieldSession.build(config, paths)
    flags = asdict(session.state.flags)
    if not session.state.running and not any(flags.values()) and not args.force:
        print("[!] Le bouclier n'est pas actif (forcer avec 'stop --force').")
        return 0

    # Ctrl+C / SIGTERM notés seulement : la restauration va jusqu'au bout
    session.install_signal_handlers()
    print("[*] Restauration de l'état réseau...")
    report = session.deactivate()
    report.interrupted = session.pending_signal
    _print_report("Shield deactivated", report)
    return _exit_code([report])


# ---------------------------------------------------
# Commande : restart
# ---------------------------------------------------

def cmd_restart(args):
    _require_root("restart")
    paths, config = _load(args)
    _check_binaries()

    session = ShieldSession.build(config, paths)
    session.install_signal_handlers()
    print("[*] Redémarrage du bouclier...")
    reports = session.restart()
    _print_report("Shield deactivated", reports[0])
    if len(reports) > 1:
        _print_report("Shield activated", reports[1])
    return _exit_code(reports)


# ---------------------------------------------------
# Commande : status
# ---------------------------------------------------

def cmd_status(args):
    paths, config = _load(args)
    session = ShieldSession.build(config, paths)
    snap = session.status()

    if args.json:
        print(json.dumps(snap.to_dict(), indent=2))
        return 0

    def yn(v: bool) -> str:
        return "oui" if v else "non"

    print("=== Bouclier ===")
    print(f"Actif          : {yn(snap.running)}")
    if snap.activated_at:
        print(f"Depuis         : {snap.activated_at}")
    print(f"Tor (SOCKS)    : {yn(snap.tor_listening)}")
    print(f"I2P (HTTP)     : {yn(snap.i2p_listening)}")
    print(f"MAC aléatoire  : {yn(snap.mac_randomized)}")
    print(f"DNS sécurisé   : {yn(snap.dns_secured)}")
    print(f"Kill switch    : {yn(snap.flags.firewall)}\n")

    print("=== Interfaces ===")
    if not snap.interfaces:
        print("Aucune interface.")
    for i in snap.interfaces:
        tag = " (aléatoire)" if i.randomized else ""
        print(f"- {i.name:<12} {i.mac}{tag}")
    return 0


# ---------------------------------------------------
# Commande : new-identity
# ---------------------------------------------------

def cmd_new_identity(args):
    paths, config = _load(args)
    session = ShieldSession.build(config, paths)

    r = session.proxy.new_identity()
    if r.failed:
        print(f"[ERREUR] {'; '.join(r.errors)}")
        return 1
    print(f"[OK] {'; '.join(r.details)}")
    return 0


# ---------------------------------------------------
# Commande : bridges set / export
# ---------------------------------------------------

def cmd_bridges_set(args):
    paths, config = _load(args)

    try:
        bridge_type = parse_bridge_type(args.type)
        lines = list(args.lines)
        if args.file:
            lines += Path(args.file).read_text(encoding="utf-8").splitlines()
        record = apply_bridge(config.as_dict(), bridge_type, lines)
    except (ValueError, OSError) as e:
        print(f"[ERREUR] {e}")
        return 1

    config.replace(record)
    config.save()
    print(f"[OK] Bridges : {bridge_type.value} ({len(config.get_lines('tor', 'bridges'))} ligne(s))")
    print("[!] Pense à appliquer avec : sudo shield restart")
    return 0


def cmd_bridges_export(args):
    paths, config = _load(args)

    bridges = config.get_lines("tor", "bridges")
    if not config.get_bool("tor", "use_bridges") or not bridges:
        print("Aucun bridge configuré.")
        return 1

    text = "\n".join(bridges)
    print(text)

    if args.qr:
        img = qrcode.make(text)
        path = Path(args.qr)
        path.parent.mkdir(parents=True, exist_ok=True)
        img.save(str(path))
        print(f"[OK] QR code généré : {path}")
    return 0


# ---------------------------------------------------
# Commande : config show
# ---------------------------------------------------

def cmd_config_show(args):
    paths, config = _load(args)
    print(f"# {paths.config_file}")
    for section, values in config.as_dict().items():
        print(f"[{section}]")
        for k, v in values.items():
            v = v.replace("\n", "\n    ")
            print(f"{k} = {v}")
        print()
    return 0


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shield")
    parser.add_argument("--home", help="racine de configuration (défaut: $SHIELD_HOME ou ~/.config/anon-shield)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    # start
    p_start = sub.add_parser("start")
    p_start.add_argument("--foreground", action="store_true", help="reste actif, restaure sur Ctrl+C / SIGTERM")
    p_start.add_argument("--force", action="store_true", help="réapplique même si déjà actif")
    p_start.set_defaults(func=cmd_start)

    # stop
    p_stop = sub.add_parser("stop")
    p_stop.add_argument("--force", action="store_true", help="restaure même sans session enregistrée")
    p_stop.set_defaults(func=cmd_stop)

    # restart
    p_restart = sub.add_parser("restart")
    p_restart.set_defaults(func=cmd_restart)

    # status
    p_status = sub.add_parser("status")
    p_status.add_argument("--json", action="store_true")
    p_status.set_defaults(func=cmd_status)

    # new-identity
    p_nym = sub.add_parser("new-identity")
    p_nym.set_defaults(func=cmd_new_identity)

    # bridges
    p_br = sub.add_parser("bridges")
    br_sub = p_br.add_subparsers(dest="bridges_cmd")

    p_br_set = br_sub.add_parser("set")
    p_br_set.add_argument("type", help="none, obfs4, snowflake, webtunnel, meek")
    p_br_set.add_argument("lines", nargs="*", help="lignes de bridge")
    p_br_set.add_argument("--file", help="fichier contenant une ligne de bridge par ligne")
    p_br_set.set_defaults(func=cmd_bridges_set)

    p_br_exp = br_sub.add_parser("export")
    p_br_exp.add_argument("--qr", help="chemin du PNG à générer")
    p_br_exp.set_defaults(func=cmd_bridges_export)

    # config
    p_cfg = sub.add_parser("config")
    cfg_sub = p_cfg.add_subparsers(dest="config_cmd")
    p_cfg_show = cfg_sub.add_parser("show")
    p_cfg_show.set_defaults(func=cmd_config_show)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse sort en 2 sur commande inconnue
        return 0 if e.code == 0 else 1

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except ValueError as e:
        print(f"[ERREUR] Configuration invalide : {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
