"""
agentcore Console
Interactive operator commands for a single agent session.

Responsibilities:
- Parse operator command lines
- Dispatch them to the client core
- Report results and failures without killing the shell
- Attach to a freshly connected session (attach_console)
"""

import argparse
import shlex
import sys
from typing import Callable, Dict, List, Mapping, Optional

from .artifacts import Stager
from .config import CoreConfig
from .core import ClientCore
from .errors import AgentCoreError, FatalSessionError, ValidationError
from .session import AgentSession
from .transport import VALID_TRANSPORTS, TransportOptions


class ConsoleArgumentError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that reports errors instead of exiting the shell."""

    def error(self, message):
        raise ConsoleArgumentError(f"{self.prog}: {message}")

    def exit(self, status=0, message=None):
        if message:
            raise ConsoleArgumentError(message.strip())
        raise ConsoleArgumentError("")


def build_parsers() -> Dict[str, argparse.ArgumentParser]:
    parsers = {}

    p = _Parser(prog="load", add_help=False, description="Load one or more modules")
    p.add_argument("modules", nargs="+")
    p.add_argument("-e", "--extension-path", help="Explicit module artifact path")
    p.add_argument("-d", "--disk", action="store_true", help="Load the module from disk")
    parsers["load"] = p

    p = _Parser(prog="transport", add_help=False, description="Change the current transport")
    p.add_argument("action", choices=["change"])
    p.add_argument("-t", "--transport", required=True, choices=sorted(VALID_TRANSPORTS))
    p.add_argument("-l", "--lhost")
    p.add_argument("-p", "--lport", type=int, required=True)
    p.add_argument("--comms-timeout", type=int)
    p.add_argument("--session-exp", type=int)
    p.add_argument("--ua")
    p.add_argument("--cert")
    p.add_argument("--proxy-host")
    p.add_argument("--proxy-port", type=int)
    p.add_argument("--proxy-type", choices=["http", "socks"])
    p.add_argument("--proxy-user")
    p.add_argument("--proxy-pass")
    parsers["transport"] = p

    p = _Parser(prog="migrate", add_help=False, description="Migrate into another process")
    p.add_argument("pid", type=int)
    p.add_argument("-P", "--writable-dir", help="Writable directory (linux only)")
    parsers["migrate"] = p

    p = _Parser(prog="pin", add_help=False, description="Manage certificate pinning")
    p.add_argument("action", choices=["enable", "disable", "show"])
    parsers["pin"] = p

    return parsers


class CoreConsole:
    def __init__(self, core: ClientCore, out=None, err=None):
        self.core = core
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.parsers = build_parsers()
        self.handlers: Dict[str, Callable[[List[str]], bool]] = {
            "load": self.cmd_load,
            "transport": self.cmd_transport,
            "migrate": self.cmd_migrate,
            "pin": self.cmd_pin,
            "machine_id": self.cmd_machine_id,
            "shutdown": self.cmd_shutdown,
            "info": self.cmd_info,
            "help": self.cmd_help,
        }

    def _say(self, msg: str):
        print(msg, file=self.out)

    def _warn(self, msg: str):
        print(f"[!] {msg}", file=self.err)

    def run_command(self, line: str) -> bool:
        """Execute one command line; True when it succeeded."""
        try:
            parts = shlex.split(line)
        except ValueError as e:
            self._warn(f"Parse error: {e}")
            return False
        if not parts:
            return False

        handler = self.handlers.get(parts[0])
        if handler is None:
            self._warn("Unknown command. Type 'help' for options.")
            return False

        try:
            return handler(parts[1:])
        except ConsoleArgumentError as e:
            if str(e):
                self._warn(str(e))
            return False
        except FatalSessionError as e:
            self._warn(f"Session lost: {e}")
            return False
        except AgentCoreError as e:
            self._warn(f"{parts[0]} failed: {e}")
            return False

    def interactive(self, prompt: Optional[str] = None):
        """Read commands until EOF, 'exit' or the session dies."""
        prompt = prompt or f"agentcore [{self.core.session.platform_tag}]> "
        while self.core.session.alive:
            try:
                line = input(prompt).strip()
            except EOFError:
                break
            except KeyboardInterrupt:
                self._say("\n[i] Use 'exit' to leave the console.")
                continue
            if line in ("exit", "quit"):
                break
            self.run_command(line)

    def cmd_load(self, argv: List[str]) -> bool:
        args = self.parsers["load"].parse_args(argv)
        for module in args.modules:
            self._say(f"[i] Loading extension {module}...")
            self.core.use(module, args.extension_path, args.disk)
            self._say("[+] Success.")
        return True

    def cmd_transport(self, argv: List[str]) -> bool:
        args = self.parsers["transport"].parse_args(argv)
        opts = TransportOptions(
            transport=args.transport,
            lhost=args.lhost,
            lport=args.lport,
            comms_timeout=args.comms_timeout,
            session_exp=args.session_exp,
            ua=args.ua,
            cert=args.cert,
            proxy_host=args.proxy_host,
            proxy_port=args.proxy_port,
            proxy_type=args.proxy_type,
            proxy_user=args.proxy_user,
            proxy_pass=args.proxy_pass,
        )
        if not self.core.change_transport(opts):
            self._warn("Failed to change transport, please check the parameters")
            return False
        self._say("[+] Transport change requested, the session may restart on the new transport.")
        return True

    def cmd_migrate(self, argv: List[str]) -> bool:
        args = self.parsers["migrate"].parse_args(argv)
        self._say(f"[i] Migrating to {args.pid}...")
        self.core.migrate(args.pid, args.writable_dir)
        self._say("[+] Migration completed successfully.")
        return True

    def cmd_pin(self, argv: List[str]) -> bool:
        args = self.parsers["pin"].parse_args(argv)
        if args.action == "enable":
            result = self.core.enable_cert_pin()
            if result is not None:
                self._say(f"[+] Pinned certificate hash: {result.hex()}")
        elif args.action == "disable":
            result = self.core.disable_cert_pin()
            if result is not None:
                self._say("[+] Certificate pinning disabled.")
        else:
            result = self.core.get_cert_pin()
            if result is not None:
                self._say(f"[i] Pinned hash: {result.hex() if result else '(none)'}")

        if result is None:
            self._warn("Certificate pinning requires a persistent TLS transport")
            return False
        return True

    def cmd_machine_id(self, argv: List[str]) -> bool:
        self._say(f"[+] Machine ID: {self.core.machine_id()}")
        return True

    def cmd_shutdown(self, argv: List[str]) -> bool:
        self._say("[i] Shutting down the agent...")
        return self.core.shutdown()

    def cmd_info(self, argv: List[str]) -> bool:
        session = self.core.session
        transport = session.transport
        self._say("\n=== Session Info ===")
        self._say(f"Platform:   {session.platform_tag}")
        self._say(f"Suffix:     {session.binary_suffix}")
        self._say(f"Transport:  {transport.url or 'N/A'} ({'polling' if transport.passive else 'persistent'})")
        self._say(f"Keep-alive: {session.keep_alive}")
        self._say(f"Alive:      {session.alive}")
        self._say(f"Modules:    {', '.join(sorted(session.extensions)) or 'none'}")
        self._say("====================\n")
        return True

    def cmd_help(self, argv: List[str]) -> bool:
        self._say("""
Core Commands:
  load <module>...            Load capability modules (-e PATH, -d)
  transport change -t T -p P  Change transport (-l LHOST, --ua, --cert, --proxy-*)
  migrate <pid>               Migrate into another process (-P DIR on linux)
  pin enable|disable|show     Manage TLS certificate pinning
  machine_id                  Show the agent's machine id
  shutdown                    Shut the agent down
  info                        Show session metadata
  exit / quit                 Leave the console
""")
        return True


def attach_console(session: AgentSession, stager: Optional[Stager] = None,
                   environ: Optional[Mapping[str, str]] = None, prompt: Optional[str] = None):
    """
    Entry point for the session manager once an agent has connected.

    Builds the client core from AGENTCORE_* settings and runs the console
    until the operator leaves or the session dies.
    """
    try:
        config = CoreConfig.from_env(environ)
    except ValidationError as e:
        print(f"[!] {e}", file=sys.stderr)
        return None

    console = CoreConsole(ClientCore(session, config, stager))
    print(f"[+] Console attached to {session.platform_tag} session")
    console.interactive(prompt)
    return console
