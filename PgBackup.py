"""PgBackup.py

Dump every non-template database on a Postgres server into gzip-compressed,
restorable SQL files, optionally dump the server roles, and remove old backups.

Usage (example):
		python PgBackup.py --host db.example.com -u postgres -p secret --backup-roles

Produces:
	<backup-directory>/<host>/db-<database>-<YYYYMMDD>.sql.gz
	<backup-directory>/<host>/roles-<host>-<YYYYMMDD>.sql

Requires:
	- Python 3.8+
	- psycopg2-binary
	- pg_dump (and pg_dumpall for --backup-roles) on PATH

Runs one pass per invocation; schedule it with cron for periodic backups.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional
import argparse
import contextlib
import datetime
import gzip
import io
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import zlib

import psycopg2


CATALOG_DATABASE = "postgres"
DEFAULT_PORT = 5432
DEFAULT_EXCLUDE = "postgres"
DEFAULT_RETENTION = "+5"
SECONDS_PER_DAY = 86400

LIST_DATABASES_SQL = "SELECT datname FROM pg_database WHERE NOT datistemplate"


class ConfigurationError(ValueError):
	"""Invalid or missing invocation input."""


class MissingToolError(RuntimeError):
	"""A required client binary is not installed."""


class DumpError(RuntimeError):
	"""A dump of one database (or of the roles) failed."""


class BackupCancelled(Exception):
	"""Raised from the SIGTERM handler so cleanup runs on the way out."""


def default_backup_directory() -> Path:
	return Path.home() / "postgres"


def compile_exclude(pattern: Optional[str]):
	"""Compile the exclusion regex. An empty pattern excludes nothing."""
	if not pattern:
		return None
	try:
		return re.compile(pattern)
	except re.error as e:
		raise ConfigurationError(f"invalid --exclude-dbs regex {pattern!r}: {e}")


_AGE_RE = re.compile(r"^([+-]?)(\d+)$")


def parse_age(spec: str):
	"""Parse a find -mtime style age ('+5', '-2', '3') into (sign, days)."""
	m = _AGE_RE.match(str(spec).strip())
	if not m:
		raise ConfigurationError(f"invalid retention age {spec!r}, expected a value like '+5'")
	return m.group(1), int(m.group(2))


@dataclass(frozen=True)
class ConnectionTarget:
	host: str
	user: str
	password: str = field(repr=False)
	port: int = DEFAULT_PORT
	ssl: bool = False


@dataclass(frozen=True)
class BackupConfig:
	base_directory: Path = field(default_factory=default_backup_directory)
	exclude_pattern: str = DEFAULT_EXCLUDE
	backup_roles: bool = False
	role_passwords: bool = True
	include_ownership: bool = True
	retention_age: str = DEFAULT_RETENTION
	fail_on_error: bool = False
	dry_run: bool = False
	verbose: bool = False

	def __post_init__(self):
		object.__setattr__(self, "base_directory", Path(self.base_directory).expanduser())
		compile_exclude(self.exclude_pattern)
		parse_age(self.retention_age)


@dataclass(frozen=True)
class DumpOptions:
	create: bool = True
	clean: bool = True
	include_ownership: bool = True


@dataclass
class DumpResult:
	name: str
	path: Optional[Path] = None
	error: Optional[str] = None

	@property
	def ok(self) -> bool:
		return self.error is None


@dataclass
class BackupReport:
	roles: Optional[DumpResult] = None
	databases: List[DumpResult] = field(default_factory=list)
	pruned: List[Path] = field(default_factory=list)

	@property
	def results(self) -> List[DumpResult]:
		return ([self.roles] if self.roles else []) + self.databases

	@property
	def failures(self) -> List[DumpResult]:
		return [r for r in self.results if not r.ok]

	def exit_code(self, fail_on_error: bool = False) -> int:
		if fail_on_error and self.failures:
			return 1
		return 0


def _pgpass_escape(value) -> str:
	return str(value).replace("\\", "\\\\").replace(":", "\\:")


def pgpass_line(target: ConnectionTarget) -> str:
	host, port, user, password = (_pgpass_escape(v) for v in (target.host, target.port, target.user, target.password))
	return f"{host}:{port}:*:{user}:{password}\n"


@contextlib.contextmanager
def pgpass_file(target: ConnectionTarget):
	"""Materialize a private pgpass file for the run and always remove it.

	The file lives at a process-unique temp path with 0600 permissions and holds
	a single ``host:port:*:user:password`` entry. It is deleted when the block
	exits, whether it finished normally, raised, or was cancelled.
	"""
	fd, path = tempfile.mkstemp(prefix="pgpass.")
	try:
		with os.fdopen(fd, "w", encoding="utf8") as f:
			os.chmod(path, 0o600)
			f.write(pgpass_line(target))
		yield Path(path)
	finally:
		try:
			os.remove(path)
		except FileNotFoundError:
			pass


def client_env(target: ConnectionTarget, passfile) -> dict:
	"""Environment for pg_dump/pg_dumpall: credentials come from the pgpass file."""
	env = os.environ.copy()
	env["PGPASSFILE"] = str(passfile)
	if target.ssl:
		env["PGSSLMODE"] = "require"
	return env


def connect_catalog(target: ConnectionTarget, passfile, connect=None):
	connect = connect or psycopg2.connect
	kwargs = {
		"host": target.host,
		"port": target.port,
		"user": target.user,
		"dbname": CATALOG_DATABASE,
		"passfile": str(passfile),
	}
	if target.ssl:
		kwargs["sslmode"] = "require"
	return connect(**kwargs)


def list_databases(target: ConnectionTarget, config: BackupConfig, passfile, connect=None) -> Iterator[str]:
	"""Return the non-template databases that do not match the exclusion regex.

	The catalog query runs immediately, so connection and authentication errors
	(psycopg2.Error) surface here. The names come back as a one-shot generator.
	"""
	conn = connect_catalog(target, passfile, connect=connect)
	try:
		cur = conn.cursor()
		cur.execute(LIST_DATABASES_SQL)
		names = [row[0] for row in cur.fetchall()]
		cur.close()
	finally:
		conn.close()

	excluded = compile_exclude(config.exclude_pattern)
	if config.verbose:
		print(f"Catalog databases on {target.host}: {', '.join(names) or '(none)'}")
	return (name for name in names if not (excluded and excluded.search(name)))


def pg_dump_command(target: ConnectionTarget, database: str, options: DumpOptions, pg_dump: str = "pg_dump") -> list:
	cmd = [
		pg_dump,
		"-h", target.host,
		"-p", str(target.port),
		"-U", target.user,
		"--no-password",
		"--dbname", database,
	]
	if options.create:
		cmd.append("--create")
	if options.clean:
		cmd.append("--clean")
	if not options.include_ownership:
		cmd.append("--no-owner")
	return cmd


def pg_dumpall_roles_command(target: ConnectionTarget, include_passwords: bool = True, pg_dumpall: str = "pg_dumpall") -> list:
	cmd = [
		pg_dumpall,
		"-h", target.host,
		"-p", str(target.port),
		"-U", target.user,
		"--no-password",
		"--roles-only",
	]
	# Managed servers (RDS, Cloud SQL, Azure) deny reading pg_authid
	if not include_passwords:
		cmd.append("--no-role-passwords")
	return cmd


def stream_command(cmd: list, env: Optional[dict] = None, chunk_size: int = 1 << 16) -> Iterator[bytes]:
	"""Run cmd and yield its stdout in chunks; raise DumpError on a non-zero exit."""
	with tempfile.TemporaryFile() as errf:
		proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errf, env=env)
		try:
			while True:
				chunk = proc.stdout.read(chunk_size)
				if not chunk:
					break
				yield chunk
			proc.stdout.close()
			returncode = proc.wait()
		finally:
			if proc.poll() is None:
				proc.kill()
				proc.wait()
			if not proc.stdout.closed:
				proc.stdout.close()
		if returncode != 0:
			errf.seek(0)
			message = errf.read().decode("utf8", errors="replace").strip()
			raise DumpError(message or f"{cmd[0]} failed: {returncode}")


class PgDumpCli:
	"""Dumper backed by the pg_dump and pg_dumpall client binaries."""

	def __init__(self, env: Optional[dict] = None, pg_dump: str = "pg_dump", pg_dumpall: str = "pg_dumpall"):
		self.env = env
		self.pg_dump = pg_dump
		self.pg_dumpall = pg_dumpall

	def dump(self, target: ConnectionTarget, database: str, options: DumpOptions) -> Iterator[bytes]:
		return stream_command(pg_dump_command(target, database, options, self.pg_dump), self.env)

	def dump_roles(self, target: ConnectionTarget, include_passwords: bool = True) -> Iterator[bytes]:
		cmd = pg_dumpall_roles_command(target, include_passwords, self.pg_dumpall)
		return stream_command(cmd, self.env)


class GzipCodec:
	"""Streaming gzip codec; output is readable by gunzip/zcat."""

	def __init__(self, level: int = 6):
		self.level = level

	def compress(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
		buf = io.BytesIO()
		with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=self.level) as gz:
			for chunk in chunks:
				gz.write(chunk)
				if buf.tell():
					yield buf.getvalue()
					buf.seek(0)
					buf.truncate()
		yield buf.getvalue()

	def decompress(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
		with gzip.GzipFile(fileobj=io.BytesIO(b"".join(chunks)), mode="rb") as gz:
			while True:
				data = gz.read(1 << 16)
				if not data:
					break
				yield data


def check_requirements(config: BackupConfig, which=None) -> None:
	which = which or shutil.which
	tools = ["pg_dump"]
	if config.backup_roles:
		tools.append("pg_dumpall")
	for tool in tools:
		if not which(tool):
			raise MissingToolError(
				f"'{tool}' was not found on PATH. Install the PostgreSQL client tools (e.g. apt install postgresql-client)."
			)


def host_dirname(host: str) -> str:
	"""Directory-safe form of host; socket paths like /var/run/postgresql become var_run_postgresql."""
	name = host.strip("/\\").replace("/", "_").replace("\\", "_")
	if name in ("", ".", ".."):
		return "localhost"
	return name


def host_directory(base_directory: Path, host: str) -> Path:
	return Path(base_directory) / host_dirname(host)


def database_artifact_path(base_directory: Path, host: str, database: str, day: datetime.date) -> Path:
	return host_directory(base_directory, host) / f"db-{database.replace('/', '_')}-{day:%Y%m%d}.sql.gz"


def roles_artifact_path(base_directory: Path, host: str, day: datetime.date) -> Path:
	return host_directory(base_directory, host) / f"roles-{host_dirname(host)}-{day:%Y%m%d}.sql"


def atomic_write(path: Path, chunks: Iterable[bytes]) -> int:
	# write to a temp file in same directory then move;
	# a failed dump leaves no partial artifact
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp = tempfile.mkstemp(prefix=".", suffix=".partial", dir=str(path.parent))
	written = 0
	try:
		with os.fdopen(fd, "wb") as f:
			for chunk in chunks:
				f.write(chunk)
				written += len(chunk)
		os.replace(tmp, str(path))
	finally:
		if os.path.exists(tmp):
			try:
				os.remove(tmp)
			except OSError:
				pass
	return written


def backup_roles(target: ConnectionTarget, config: BackupConfig, dumper, today: datetime.date) -> DumpResult:
	"""Dump roles and grants to an uncompressed .sql file."""
	print("\n==> Started roles backup...")
	path = roles_artifact_path(config.base_directory, target.host, today)
	if config.dry_run:
		print(f"[DRY] Would save roles at '{path}'.")
		return DumpResult("roles", path)
	try:
		host_directory(config.base_directory, target.host).mkdir(parents=True, exist_ok=True)
		atomic_write(path, dumper.dump_roles(target, include_passwords=config.role_passwords))
	except (DumpError, OSError) as e:
		print(f"Warning: the roles backup has failed: {e}", file=sys.stderr)
		return DumpResult("roles", error=str(e))
	print(f"Saved roles at '{path}'.")
	return DumpResult("roles", path)


def dump_database(target: ConnectionTarget, database: str, config: BackupConfig, dumper, codec, today: datetime.date) -> DumpResult:
	path = database_artifact_path(config.base_directory, target.host, database, today)
	if config.dry_run:
		print(f"[DRY] Would save '{database}' database backup at '{path}'.")
		return DumpResult(database, path)
	options = DumpOptions(create=True, clean=True, include_ownership=config.include_ownership)
	try:
		host_directory(config.base_directory, target.host).mkdir(parents=True, exist_ok=True)
		size = atomic_write(path, codec.compress(dumper.dump(target, database, options)))
	except (DumpError, OSError, zlib.error) as e:
		print(f"Warning: the dump for {database} database has failed: {e}", file=sys.stderr)
		return DumpResult(database, error=str(e))
	print(f"Saved '{database}' database backup at '{path}'.")
	if config.verbose:
		print(f"  {size} bytes compressed")
	return DumpResult(database, path)


def backup_databases(target: ConnectionTarget, config: BackupConfig, databases: Iterable[str], dumper, codec, today: datetime.date) -> List[DumpResult]:
	"""Dump each database in turn. One failure never stops the others."""
	print("\n==> Started databases backup...")
	results = []
	for database in databases:
		print(f"Database: {database}")
		results.append(dump_database(target, database, config, dumper, codec, today))
	return results


def is_expired(mtime: float, retention_age: str, now: float) -> bool:
	"""Match find's -mtime: age is counted in whole days, fractions dropped."""
	sign, days = parse_age(retention_age)
	age = int((now - mtime) // SECONDS_PER_DAY)
	if sign == "+":
		return age > days
	if sign == "-":
		return age < days
	return age == days


def prune(base_directory, retention_age: str, keep: Iterable = (), now: Optional[float] = None, dry_run: bool = False, verbose: bool = False) -> List[Path]:
	"""Delete every regular file under base_directory whose age matches retention_age.

	Files listed in keep are left alone. Files that vanish or cannot be removed
	are skipped without complaint. Returns the removed paths.
	"""
	parse_age(retention_age)
	base = Path(base_directory)
	if not base.is_dir():
		return []
	now = time.time() if now is None else now
	protected = {Path(p).resolve() for p in keep}
	removed = []
	for p in sorted(base.rglob("*")):
		try:
			if p.is_symlink() or not p.is_file():
				continue
			if p.resolve() in protected:
				continue
			if not is_expired(p.stat().st_mtime, retention_age, now):
				continue
			if dry_run:
				print(f"[DRY] Would remove old backup: {p}")
			else:
				p.unlink()
		except OSError:
			continue
		removed.append(p)
		if verbose and not dry_run:
			print(f"Removed old backup: {p}")
	return removed


def run(target: ConnectionTarget, config: BackupConfig, dumper_factory=None, codec=None, connect=None, today: Optional[datetime.date] = None, now: Optional[float] = None) -> BackupReport:
	"""Run one backup pass: roles, databases, then retention.

	The pgpass file is removed on every exit path. Retention runs even when the
	database list cannot be fetched; the psycopg2 error is re-raised afterwards.
	Per-database and roles failures are only recorded in the report.
	"""
	dumper_factory = dumper_factory or PgDumpCli
	codec = codec or GzipCodec()
	today = today or datetime.date.today()
	report = BackupReport()

	def remove_old_backups():
		keep = [r.path for r in report.results if r.ok and r.path]
		report.pruned = prune(
			config.base_directory,
			config.retention_age,
			keep=keep,
			now=now,
			dry_run=config.dry_run,
			verbose=config.verbose,
		)

	with pgpass_file(target) as passfile:
		if config.verbose:
			print(f"Using pgpass file: {passfile}")
		dumper = dumper_factory(client_env(target, passfile))

		if config.backup_roles:
			report.roles = backup_roles(target, config, dumper, today)

		try:
			databases = list_databases(target, config, passfile, connect=connect)
		except psycopg2.Error:
			remove_old_backups()
			raise
		report.databases = backup_databases(target, config, databases, dumper, codec, today)
		remove_old_backups()

	return report


def _raise_cancelled(signum, frame):
	raise BackupCancelled(f"received signal {signum}")


def build_parser() -> argparse.ArgumentParser:
	ap = argparse.ArgumentParser(
		prog="pg-backup",
		description="Dump all PostgreSQL databases from a server and optionally back up the roles and permissions.",
	)
	ap.add_argument("--host", default=os.environ.get("PGHOST"), help="PostgreSQL server host (required)")
	ap.add_argument("-u", "--user", default=os.environ.get("PGUSER"), help="Database user name (required)")
	ap.add_argument("-p", "--password", default=os.environ.get("PGPASSWORD"), help="Database user password (required; PGPASSWORD is used if omitted)")
	ap.add_argument("--port", default=int(os.environ.get("PGPORT", DEFAULT_PORT)), type=int)
	ap.add_argument("--backup-directory", default=str(default_backup_directory()), help="Base backup directory (default: %(default)s)")
	ap.add_argument("--remove-backups-from", default=DEFAULT_RETENTION, metavar="DAYS", help="Remove backups by age, in find -mtime format (default: %(default)s)")
	ap.add_argument("--exclude-dbs", default=DEFAULT_EXCLUDE, help="Regex of databases to skip; an empty string skips none (default: %(default)s)")
	ap.add_argument("--backup-roles", action="store_true", help="Also back up the roles and permissions")
	ap.add_argument("--no-role-passwords", action="store_true", help="Leave password hashes out of the roles backup (for managed servers without pg_authid access)")
	ap.add_argument("--no-owner", action="store_true", help="Do not export database object ownership")
	ap.add_argument("--ssl", action="store_true", help="Require an SSL connection (sets PGSSLMODE=require)")
	ap.add_argument("--fail-on-error", action="store_true", help="Exit non-zero when any dump failed")
	ap.add_argument("--dry-run", action="store_true", help="Show what would be dumped and removed without writing files")
	ap.add_argument("--verbose", action="store_true", help="Verbose logging")
	return ap


def main(argv=None) -> int:
	ap = build_parser()
	args = ap.parse_args(argv)

	if not (args.host and args.user and args.password):
		print(f"{ap.prog}: Required arguments not passed.", file=sys.stderr)
		ap.print_usage(sys.stderr)
		return 1

	try:
		target = ConnectionTarget(
			host=args.host,
			user=args.user,
			password=args.password,
			port=args.port,
			ssl=args.ssl,
		)
		config = BackupConfig(
			base_directory=Path(args.backup_directory),
			exclude_pattern=args.exclude_dbs,
			backup_roles=args.backup_roles,
			role_passwords=not args.no_role_passwords,
			include_ownership=not args.no_owner,
			retention_age=args.remove_backups_from,
			fail_on_error=args.fail_on_error,
			dry_run=args.dry_run,
			verbose=args.verbose,
		)
		check_requirements(config)
	except (ConfigurationError, MissingToolError) as e:
		print(f"Error: {e}", file=sys.stderr)
		return 1

	previous = signal.signal(signal.SIGTERM, _raise_cancelled)
	try:
		report = run(target, config)
	except (BackupCancelled, KeyboardInterrupt):
		print("Backup cancelled.", file=sys.stderr)
		return 130
	except psycopg2.Error as e:
		print(f"Error: cannot list databases on {target.host}: {e}", file=sys.stderr)
		return 1
	except OSError as e:
		print(f"Error: {e}", file=sys.stderr)
		return 1
	finally:
		signal.signal(signal.SIGTERM, previous)

	dumped = sum(1 for r in report.databases if r.ok)
	print(f"Done. Databases backed up: {dumped}/{len(report.databases)}. Old backups removed: {len(report.pruned)}")
	for failed in report.failures:
		print(f"Failed: {failed.name}", file=sys.stderr)
	return report.exit_code(config.fail_on_error)


if __name__ == "__main__":
	sys.exit(main())
