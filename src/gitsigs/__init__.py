# -*- coding: utf-8 -*-
#
# Copyright (C) 2026 by the git-signatures contributors
# SPDX-License-Identifier: MIT-0
#
import sys
import os
import re

import argparse
import base64
import datetime
import enum
import logging
import random
import shutil
import subprocess
import tempfile

from pathlib import Path
from typing import Optional, List, Tuple, Dict, Union, Callable, Iterable

import gnupg

GitConfigType = Dict[str, Union[str, List[str]]]

logger: logging.Logger = logging.getLogger(__name__)

# Where signatures live
NOTES_NAME = 'signatures'
NOTES_REF = 'refs/notes/signatures'
SIG_TAG = 'git-signatures'
TAG_REF = 'refs/tags/git-signatures'

# Hardcoded defaults
DEFAULT_REMOTE = 'origin'
DEFAULT_KEYFILE = '.gitsigners'
DEFAULT_TRUSTLEVEL = 'ULTIMATE'
DEFAULT_MINCOUNT = 1
DEFAULT_KEYSERVERS: List[str] = [
    'hkps://keys.openpgp.org',
    'hkps://keyserver.ubuntu.com',
    'hkps://pgp.mit.edu',
]
# Ownertrust handed to keys from the signer list
IMPORT_TRUST = 'TRUST_ULTIMATE'

# Status keywords we act on
STATUS_UNKNOWN = 'unknown'
STATUS_VALID = 'VALIDSIG'
FAILURE_KEYWORDS = ('BADSIG', 'ERRSIG', 'EXPSIG', 'EXPKEYSIG', 'REVKEYSIG')
TRUST_PREFIX = 'TRUST_'
GNUPG_PREFIX = '[GNUPG:]'

# Quick cache for config settings
CONFIGCACHE: Dict[str, GitConfigType] = dict()

# My version
__VERSION__ = '0.1.0'


class Error(Exception):
    """Base exception for git-signatures errors.

    Args:
        message: Error description.
        errors: Optional list of detailed error messages.
    """

    errors: Optional[List[str]]

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        s = super().__str__()
        if self.errors:
            s = '%s: (%s)' % (s, ', '.join(self.errors))
        return s


class ConfigurationError(Error):
    """Raised when configuration is invalid or missing."""


class MissingToolError(ConfigurationError):
    """Raised when git or gpg cannot be found."""


class SigningError(Error):
    """Raised when creating or storing a signature fails."""


class EmptyDiffError(SigningError):
    """Raised when the ref range to sign contains no changes."""


class NoKeyError(SigningError):
    """Raised when there is no usable secret key to sign with."""


class ValidationError(Error):
    """Raised when signature verification fails."""


class PolicyError(ValidationError):
    """Raised when fewer trusted signatures than required are found."""


class SyncError(Error):
    """Raised when signatures cannot be fetched, merged or pushed."""


class KeyImportError(Error):
    """Raised when signer keys cannot be imported."""


class SignatureRecord:
    """The parsed outcome of verifying one stored signature.

    Every field starts out as ``unknown`` and is filled in from whatever
    status lines gpg produced.
    """

    keyid: str
    status: str
    trust: str
    date: str
    author: str

    def __init__(self, keyid: str = STATUS_UNKNOWN, status: str = STATUS_UNKNOWN,
                 trust: str = STATUS_UNKNOWN, date: str = STATUS_UNKNOWN,
                 author: str = STATUS_UNKNOWN):
        self.keyid = keyid
        self.status = status
        self.trust = trust
        self.date = date
        self.author = author

    @property
    def valid(self) -> bool:
        return self.status == STATUS_VALID

    def as_raw(self) -> str:
        return '|'.join((self.keyid, self.status, self.trust, self.date, self.author))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SignatureRecord):
            return NotImplemented
        return self.as_raw() == other.as_raw()

    def __repr__(self) -> str:
        return 'SignatureRecord(%s)' % self.as_raw()


class RepoContext:
    """Everything an operation needs to know about the repository it acts on.

    Args:
        topdir: Top-level directory of the git work tree.
        config: Configuration loaded from git config.
    """

    topdir: str
    config: GitConfigType
    gpgbin: str

    def __init__(self, topdir: str, config: GitConfigType):
        self.topdir = topdir
        self.config = config
        self.gpgbin = get_gpg_bin(config)

    @classmethod
    def discover(cls, path: Optional[str] = None, section: Optional[str] = None) -> 'RepoContext':
        topdir = get_git_toplevel(path)
        if not topdir:
            raise ConfigurationError('Not in a git work tree: %s' % (path or os.getcwd()))
        return cls(topdir, get_main_config(topdir, section=section))

    def git(self, args: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
        return git_run_command(self.topdir, args, stdin=stdin)

    def gpg(self, args: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
        return gpg_run_command(self.gpgbin, args, stdin=stdin)

    def keyring(self) -> gnupg.GPG:
        return gnupg.GPG(gpgbinary=self.gpgbin)

    def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.config.get(key)
        if isinstance(value, list):
            value = value[-1] if value else None
        if value is None:
            return default
        return value


def _run_command(cmdargs: List[str],
                 stdin: Optional[bytes] = None,
                 env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s', ' '.join(cmdargs))
    cp = subprocess.run(cmdargs, input=stdin, env=env, capture_output=True, text=False)
    logger.debug('Completed %s', repr(cp))
    return cp.returncode, cp.stdout, cp.stderr


def git_run_command(topdir: Optional[str],
                    args: List[str],
                    stdin: Optional[bytes] = None,
                    env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    if topdir:
        args = ['git', '-C', topdir, '--no-pager'] + args
    else:
        args = ['git', '--no-pager'] + args
    return _run_command(args, stdin=stdin, env=env)


def gpg_run_command(gpgbin: str, cmdargs: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
    cmdargs = [gpgbin, '--batch', '--no-auto-key-retrieve'] + cmdargs
    return _run_command(cmdargs, stdin)


def get_config_from_git(regexp: str,
                        topdir: Optional[str] = None,
                        section: Optional[str] = None,
                        defaults: Optional[GitConfigType] = None,
                        multivals: Optional[List[str]] = None) -> GitConfigType:
    if multivals is None:
        multivals = list()

    args = ['config', '-z', '--get-regexp', regexp]
    _, bout, _ = git_run_command(topdir, args)
    if defaults is None:
        defaults = dict()

    if not len(bout):
        return defaults

    gitconfig = defaults
    out = bout.decode()

    for line in out.split('\x00'):
        if not line:
            continue
        try:
            key, value = line.split('\n', 1)
        except ValueError:
            # A key with no value at all, e.g. "[signatures] autopush"
            key, value = line, 'true'
        chunks = key.split('.')
        # Drop the starting part
        chunks.pop(0)
        cfgkey = chunks.pop(-1).lower()
        if len(chunks):
            if not section:
                # Ignore it
                continue
            # We're in a subsection
            sname = '.'.join(chunks)
            if sname != section:
                # Not our section
                continue
        elif section:
            # We want config from a subsection specifically
            continue

        if cfgkey in multivals:
            current = gitconfig.get(cfgkey)
            if current is None:
                gitconfig[cfgkey] = [value]
            elif isinstance(current, str):
                gitconfig[cfgkey] = [current, value]
            else:
                current.append(value)
        else:
            gitconfig[cfgkey] = value

    return gitconfig


def get_main_config(topdir: Optional[str] = None, section: Optional[str] = None) -> GitConfigType:
    """Load git-signatures configuration from git config.

    Args:
        topdir: Work tree to read the configuration of.
        section: Optional subsection name, i.e. ``[signatures "name"]``.
            If None, loads the base signatures.* settings.

    Returns:
        Configuration dictionary. Results are cached per work tree and section.
    """
    global CONFIGCACHE
    csection = '%s:%s' % (topdir or '', section or 'default')
    if csection in CONFIGCACHE:
        return CONFIGCACHE[csection]
    config = get_config_from_git(r'signatures\..*', topdir=topdir, section=section, multivals=['keyserver'])
    # Fall back to the settings git itself uses for signing
    usercfg = get_config_from_git(r'user\..*', topdir=topdir)
    if not config.get('signingkey') and usercfg.get('signingkey'):
        config['signingkey'] = usercfg['signingkey']
    if not config.get('gpgbin'):
        gpgcfg = get_config_from_git(r'gpg\..*', topdir=topdir)
        if gpgcfg.get('program'):
            config['gpgbin'] = gpgcfg['program']
    logger.debug('config: %s', config)
    CONFIGCACHE[csection] = config
    return config


def get_gpg_bin(config: Optional[GitConfigType]) -> str:
    if config and isinstance(config.get('gpgbin'), str):
        return str(config['gpgbin'])
    return 'gpg'


def check_required_tools(section: Optional[str] = None) -> None:
    missing = list()
    if shutil.which('git') is None:
        missing.append('git')
        # Can't ask git config where gpg lives
        gpgbin = get_gpg_bin(None)
    else:
        gpgbin = get_gpg_bin(get_main_config(get_git_toplevel() or None, section=section))
    if shutil.which(gpgbin) is None:
        missing.append(gpgbin)
    if missing:
        for tool in missing:
            logger.critical('E: Required tool not found: %s', tool)
        raise MissingToolError('Required tools not found', errors=missing)


def get_git_toplevel(path: Optional[str] = None) -> str:
    ecode, out, err = git_run_command(path, ['rev-parse', '--show-toplevel'])
    if ecode == 0:
        return out.decode().strip()
    return ''


def resolve_object(ctx: RepoContext, name: str, objtype: str = 'commit') -> str:
    ecode, out, err = ctx.git(['rev-parse', '--verify', '--quiet', '%s^{%s}' % (name, objtype)])
    if ecode > 0:
        raise SigningError('Could not resolve %s to a %s' % (name, objtype))
    return out.decode().strip()


def get_empty_tree(ctx: RepoContext) -> str:
    # Works for both sha1 and sha256 repositories
    ecode, out, err = ctx.git(['hash-object', '-t', 'tree', '--stdin'], stdin=b'')
    if ecode > 0:
        raise SigningError('Could not compute the empty tree', errors=err.decode().strip().split('\n'))
    return out.decode().strip()


def get_default_base(ctx: RepoContext, ref: str) -> str:
    ecode, out, err = ctx.git(['rev-parse', '--verify', '--quiet', '%s^' % ref])
    if ecode == 0:
        return out.decode().strip()
    logger.debug('%s has no parent, using the empty tree as base', ref)
    return get_empty_tree(ctx)


def get_diff_subject(ctx: RepoContext, ref: str = 'HEAD', base: Optional[str] = None) -> str:
    """Compute the signing subject for a range of changes.

    The subject is the stable patch-id of the diff between base and ref, so
    it stays the same across amends and rebases that do not change the
    content of the patch.

    Args:
        ctx: Repository to work in.
        ref: Target commit-ish.
        base: Base commit-ish. Defaults to the parent of ref, or the empty
            tree if ref has no parent.

    Returns:
        The patch-id token.

    Raises:
        EmptyDiffError: If there are no changes between base and ref.
        SigningError: If either side cannot be resolved.
    """
    if base is None:
        base = get_default_base(ctx, ref)
    basetree = resolve_object(ctx, base, 'tree')
    reftree = resolve_object(ctx, ref, 'tree')
    if basetree == reftree:
        raise EmptyDiffError('Nothing to sign: %s and %s have identical content' % (base, ref))

    ecode, diff, err = ctx.git(['diff', '--no-color', '--no-ext-diff', '--binary', base, ref])
    if ecode > 0:
        raise SigningError('Running git diff failed', errors=err.decode().strip().split('\n'))
    if not diff.strip():
        raise EmptyDiffError('Nothing to sign: the diff between %s and %s is empty' % (base, ref))

    ecode, out, err = ctx.git(['patch-id', '--stable'], stdin=diff)
    if ecode > 0:
        raise SigningError('Running git patch-id failed', errors=err.decode().strip().split('\n'))
    chunks = out.split()
    if not chunks:
        raise EmptyDiffError('Nothing to sign: no patch-id for %s..%s' % (base, ref))
    subject = chunks[0].decode()
    logger.debug('Subject for %s..%s: %s', base, ref, subject)
    return subject


def parse_gpg_status(status: Union[str, bytes]) -> SignatureRecord:
    """Turn the --status-fd output of a single verification into a record.

    Unknown keywords and lines that are not status lines are skipped. When
    several lines set the same field, the last one wins, so a VALIDSIG seen
    after a failure keyword reports the signature as valid.
    """
    if isinstance(status, bytes):
        status = status.decode(errors='replace')

    record = SignatureRecord()
    have_author = False
    for line in status.splitlines():
        chunks = line.split()
        if len(chunks) < 2 or chunks[0] != GNUPG_PREFIX:
            continue
        keyword = chunks[1]
        args = chunks[2:]

        if keyword in FAILURE_KEYWORDS:
            record.status = keyword
            if args:
                record.keyid = args[0]
            # ERRSIG <keyid> <pkalgo> <hashalgo> <sig_class> <time> <rc> [<fpr>]
            if keyword == 'ERRSIG' and len(args) > 4:
                record.date = args[4]
        elif keyword == 'GOODSIG':
            # GOODSIG <long_keyid_or_fpr> <username>
            parts = line.split(None, 3)
            if len(parts) > 2:
                record.keyid = parts[2]
            if len(parts) > 3 and parts[3].strip():
                record.author = parts[3].strip()
                have_author = True
        elif keyword == STATUS_VALID:
            # VALIDSIG <fpr> <sig_creation_date> <sig-timestamp> ...
            record.status = keyword
            if len(args) > 2:
                record.date = args[2]
        elif keyword.startswith(TRUST_PREFIX):
            record.trust = keyword[len(TRUST_PREFIX):]
        elif keyword == 'NEWSIG':
            if args and not have_author:
                record.author = args[0]

    return record


def format_sigdate(value: str) -> str:
    if value.isdigit():
        return datetime.datetime.fromtimestamp(int(value)).strftime('%Y-%m-%d %H:%M:%S')
    try:
        return datetime.datetime.strptime(value, '%Y%m%dT%H%M%S').strftime('%Y-%m-%d %H:%M:%S')
    except ValueError:
        return value


def get_sig_lines(ctx: RepoContext, commit: str) -> List[str]:
    ecode, out, err = ctx.git(['notes', '--ref', NOTES_NAME, 'show', commit])
    if ecode > 0:
        logger.debug('No signature notes for %s', commit)
        return list()
    return [line.strip() for line in out.decode().splitlines() if line.strip()]


def verify_sig_line(ctx: RepoContext, line: str, subject: str,
                    trustdb: Optional[str] = None) -> SignatureRecord:
    try:
        sigdata = base64.b64decode(line, validate=True)
    except ValueError:
        logger.info('N: Ignoring signature line that is not valid base64: %s', line[:32])
        return SignatureRecord()

    with tempfile.TemporaryDirectory(suffix='.git-signatures') as td:
        sigfile = os.path.join(td, 'sig')
        with open(sigfile, 'wb') as fh:
            fh.write(sigdata)
        gpgargs = ['--status-fd=1']
        if trustdb:
            gpgargs += ['--trustdb-name', trustdb]
        gpgargs += ['--verify', sigfile, '-']
        ecode, out, err = ctx.gpg(gpgargs, stdin=subject.encode())

    if ecode > 0:
        logger.debug('gpg exited with %s: %s', ecode, err.decode(errors='replace').strip())
    return parse_gpg_status(out)


def get_signature_records(ctx: RepoContext, ref: str = 'HEAD', base: Optional[str] = None,
                          trustdb: Optional[str] = None) -> List[SignatureRecord]:
    """Verify every signature stored for ref against the recomputed subject.

    Returns:
        One record per stored signature line, in the order they were added.
    """
    commit = resolve_object(ctx, ref)
    lines = get_sig_lines(ctx, commit)
    if not lines:
        return list()
    subject = get_diff_subject(ctx, ref, base)
    return [verify_sig_line(ctx, line, subject, trustdb=trustdb) for line in lines]


def format_records(records: Iterable[SignatureRecord]) -> str:
    headers = ('Public Key ID', 'Status', 'Trust', 'Date', 'Signer Name')
    rows = [(r.keyid, r.status, r.trust, format_sigdate(r.date), r.author) for r in records]
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(c)) for w, c in zip(widths, row)]

    def fmt(row: Iterable[str]) -> str:
        return ' | '.join(c.ljust(w) for c, w in zip(row, widths)).rstrip()

    out = [fmt(headers), '-+-'.join('-' * w for w in widths)]
    out += [fmt(row) for row in rows]
    return '\n'.join(out) + '\n'


def get_signing_key(ctx: RepoContext, key: Optional[str] = None) -> str:
    if key:
        return key
    key = ctx.get_value('signingkey')
    if not key:
        logger.critical('E: No signing key is configured')
        logger.critical('E: Pass one with --key, or set it with:')
        logger.critical('E:     git config signatures.signingkey <keyid>')
        raise NoKeyError('No signing key configured')
    return key


def check_secret_key(ctx: RepoContext, key: str) -> None:
    gpg = ctx.keyring()
    seckeys = gpg.list_keys(secret=True, keys=[key])
    if not len(seckeys):
        logger.critical('E: No usable secret key found for %s', key)
        logger.critical('E: Make sure the private key is in your local keyring:')
        logger.critical('E:     %s --list-secret-keys %s', ctx.gpgbin, key)
        logger.critical('E: or pick a different key with --key or signatures.signingkey')
        raise NoKeyError('No secret key for %s' % key)

    now = datetime.datetime.now().timestamp()
    for seckey in seckeys:
        expires = str(seckey.get('expires') or '')
        if expires.isdigit() and int(expires) <= now:
            logger.debug('Secret key %s expired at %s', seckey.get('fingerprint'), expires)
            continue
        # Uppercase letters are what the whole key, subkeys included, can still do
        if 'S' not in str(seckey.get('cap') or ''):
            logger.debug('Secret key %s cannot sign (cap: %s)', seckey.get('fingerprint'), seckey.get('cap'))
            continue
        logger.debug('Using secret key %s', seckey.get('fingerprint'))
        return

    logger.critical('E: Secret key %s is expired or not capable of signing', key)
    logger.critical('E: Check its validity and usage flags with:')
    logger.critical('E:     %s --list-secret-keys %s', ctx.gpgbin, key)
    logger.critical('E: or pick a different key with --key or signatures.signingkey')
    raise NoKeyError('Secret key for %s cannot be used for signing' % key)


def sign_subject(ctx: RepoContext, subject: str, key: str) -> bytes:
    gpgargs = ['--detach-sign', '--local-user', key, '--output', '-']
    ecode, out, err = ctx.gpg(gpgargs, stdin=subject.encode())
    if ecode > 0 or not out:
        raise SigningError('Running gpg failed', errors=err.decode(errors='replace').strip().split('\n'))
    return base64.b64encode(out)


def update_sig_tag(ctx: RepoContext) -> None:
    ecode, out, err = ctx.git(['rev-parse', '--verify', '--quiet', NOTES_REF])
    if ecode > 0:
        logger.debug('No %s yet, not moving %s', NOTES_REF, TAG_REF)
        return
    tip = out.decode().strip()
    ecode, out, err = ctx.git(['update-ref', TAG_REF, tip])
    if ecode > 0:
        raise SigningError('Could not update %s' % TAG_REF, errors=err.decode().strip().split('\n'))
    logger.debug('%s now points at %s', TAG_REF, tip)


def add_signature(ctx: RepoContext, ref: str = 'HEAD', base: Optional[str] = None,
                  key: Optional[str] = None) -> str:
    """Sign the changes between base and ref and store the signature.

    The signature is appended to the note on ref, so earlier signatures are
    kept. The transport tag is moved to the new notes tip.

    Returns:
        The base64 signature line that was stored.
    """
    key = get_signing_key(ctx, key)
    check_secret_key(ctx, key)
    commit = resolve_object(ctx, ref)
    subject = get_diff_subject(ctx, ref, base)
    sigline = sign_subject(ctx, subject, key)

    ecode, out, err = ctx.git(['notes', '--ref', NOTES_NAME, 'append', '-F', '-', commit], stdin=sigline + b'\n')
    if ecode > 0:
        raise SigningError('Could not store signature note', errors=err.decode().strip().split('\n'))
    update_sig_tag(ctx)
    return sigline.decode()


def count_trusted(records: Iterable[SignatureRecord], trustlevel: str = DEFAULT_TRUSTLEVEL) -> int:
    trustlevel = trustlevel.upper()
    keys = set()
    for record in records:
        if record.valid and record.trust == trustlevel:
            keys.add(record.keyid)
    return len(keys)


def check_policy(records: List[SignatureRecord], mincount: int = DEFAULT_MINCOUNT,
                 trustlevel: str = DEFAULT_TRUSTLEVEL) -> int:
    """Make sure enough distinct, trusted keys signed.

    Each key counts once, however many times it signed.

    Returns:
        The number of distinct keys that satisfied the policy.

    Raises:
        PolicyError: If fewer than mincount keys qualify.
    """
    found = count_trusted(records, trustlevel)
    if found < mincount:
        logger.critical('E: Found %s of %s required signatures with %s trust', found, mincount, trustlevel.upper())
        logger.critical('E: Either the changes are not sufficiently approved, or the public')
        logger.critical('E: keys of the signers are not present or trusted in your local keyring.')
        logger.critical('E: If you have not done so, try: git signatures import')
        raise PolicyError('Verification policy not met: %s/%s signatures' % (found, mincount))
    return found


def verify_ref(ctx: RepoContext, ref: str = 'HEAD', base: Optional[str] = None,
               mincount: int = DEFAULT_MINCOUNT, trustdb: Optional[str] = None,
               trustlevel: str = DEFAULT_TRUSTLEVEL) -> int:
    records = get_signature_records(ctx, ref, base, trustdb=trustdb)
    logger.debug('Records for %s: %s', ref, records)
    return check_policy(records, mincount=mincount, trustlevel=trustlevel)


def get_remote(ctx: RepoContext, remote: Optional[str] = None) -> str:
    if remote:
        return remote
    return ctx.get_value('remote', DEFAULT_REMOTE) or DEFAULT_REMOTE


def get_mirror_refs(remote: str) -> Tuple[str, str]:
    return ('refs/notes/remotes/%s/%s' % (remote, NOTES_NAME),
            'refs/tags/remotes/%s/%s' % (remote, SIG_TAG))


def pull_signatures(ctx: RepoContext, remote: Optional[str] = None) -> None:
    """Fetch signatures from a remote and merge them into ours.

    Notes are merged with the cat_sort_uniq strategy, so signature lines
    added independently on both sides are all kept, sorted and deduplicated.
    """
    remote = get_remote(ctx, remote)
    mirror_notes, mirror_tag = get_mirror_refs(remote)
    # Auto-followed tags would include mirror tags other clones pushed,
    # colliding with our own mirror destination
    fetchargs = ['fetch', '--no-tags', remote,
                 '+%s:%s' % (NOTES_REF, mirror_notes), '+%s:%s' % (TAG_REF, mirror_tag)]
    ecode, out, err = ctx.git(fetchargs)
    if ecode > 0:
        raise SyncError('Could not fetch signatures from %s' % remote,
                        errors=err.decode().strip().split('\n'))

    ecode, out, err = ctx.git(['rev-parse', '--verify', '--quiet', NOTES_REF])
    if ecode > 0:
        logger.info('N: No local signatures yet, taking them from %s', remote)
        ecode, out, err = ctx.git(['update-ref', NOTES_REF, mirror_notes])
    else:
        ecode, out, err = ctx.git(['notes', '--ref', NOTES_NAME, 'merge', '-q', '-s', 'cat_sort_uniq',
                                   mirror_notes])
    if ecode > 0:
        raise SyncError('Could not merge signatures from %s' % remote,
                        errors=err.decode().strip().split('\n'))
    update_sig_tag(ctx)


def push_signatures(ctx: RepoContext, remote: Optional[str] = None) -> None:
    remote = get_remote(ctx, remote)
    ecode, out, err = ctx.git(['rev-parse', '--verify', '--quiet', NOTES_REF])
    if ecode > 0:
        raise SyncError('No signatures to push')
    pushargs = ['push', '--force', remote, '%s:%s' % (NOTES_REF, NOTES_REF), '%s:%s' % (TAG_REF, TAG_REF)]
    ecode, out, err = ctx.git(pushargs)
    if ecode > 0:
        raise SyncError('Could not push signatures to %s' % remote,
                        errors=err.decode().strip().split('\n'))


def init_remote(ctx: RepoContext, remote: Optional[str] = None) -> List[str]:
    """Configure a remote so plain fetch and push carry signatures along.

    Returns:
        The refspecs that were added. Ones already configured are skipped.
    """
    remote = get_remote(ctx, remote)
    ecode, out, err = ctx.git(['config', '--get', 'remote.%s.url' % remote])
    if ecode > 0:
        raise ConfigurationError('No such remote: %s' % remote)

    mirror_notes, mirror_tag = get_mirror_refs(remote)
    wanted = [
        ('remote.%s.fetch' % remote, '+%s:%s' % (NOTES_REF, mirror_notes)),
        ('remote.%s.fetch' % remote, '+%s:%s' % (TAG_REF, mirror_tag)),
        ('remote.%s.push' % remote, NOTES_REF),
        ('remote.%s.push' % remote, '+%s' % TAG_REF),
    ]
    added = list()
    for cfgkey, refspec in wanted:
        ecode, out, err = ctx.git(['config', '--get-all', cfgkey])
        if refspec in out.decode().splitlines():
            logger.debug('%s already has %s', cfgkey, refspec)
            continue
        ecode, out, err = ctx.git(['config', '--add', cfgkey, refspec])
        if ecode > 0:
            raise ConfigurationError('Could not set %s' % cfgkey, errors=err.decode().strip().split('\n'))
        added.append(refspec)
    return added


def read_signer_list(path: Union[str, Path]) -> List[str]:
    keyids = list()
    with open(path, 'r') as fh:
        for line in fh:
            line = re.sub(r'#.*$', '', line).strip()
            if line:
                keyids.append(line)
    return keyids


def get_keyservers(ctx: RepoContext) -> List[str]:
    keyservers = ctx.config.get('keyserver')
    if not keyservers:
        return list(DEFAULT_KEYSERVERS)
    if isinstance(keyservers, str):
        return [keyservers]
    return list(keyservers)


def import_signer_keys(ctx: RepoContext, keyfile: Optional[str] = None) -> List[str]:
    """Fetch every key in the signer list and give it ultimate ownertrust.

    Keyservers are tried in random order for each key until one of them
    actually yields the key.

    Returns:
        Fingerprints of the imported keys.

    Raises:
        KeyImportError: If the signer list is missing, or some keys could not
            be imported from any keyserver.
    """
    if keyfile is None:
        keyfile = ctx.get_value('keyfile', DEFAULT_KEYFILE) or DEFAULT_KEYFILE
    keypath = Path(ctx.topdir, keyfile)
    if not keypath.exists():
        raise KeyImportError('Signer list not found: %s' % keypath)
    keyids = read_signer_list(keypath)
    if not keyids:
        logger.critical('N: No keys listed in %s', keypath)
        return list()

    gpg = ctx.keyring()
    keyservers = get_keyservers(ctx)
    fingerprints = list()
    failed = list()
    for keyid in keyids:
        imported = None
        for keyserver in random.sample(keyservers, len(keyservers)):
            logger.info('Fetching %s from %s', keyid, keyserver)
            result = gpg.recv_keys(keyserver, keyid)
            if result.fingerprints:
                imported = result.fingerprints
                break
            logger.debug('%s not available from %s: %s', keyid, keyserver, result.stderr)
        if not imported:
            logger.critical('E: Could not import %s from any keyserver', keyid)
            failed.append(keyid)
            continue
        logger.critical('IMPORT | %s', keyid)
        fingerprints += imported

    if fingerprints:
        trusted = gpg.trust_keys(fingerprints, IMPORT_TRUST)
        if trusted.returncode != 0:
            raise KeyImportError('Could not set trust on imported keys',
                                 errors=str(trusted.stderr).strip().split('\n'))

    if failed:
        raise KeyImportError('Some keys could not be imported', errors=failed)
    return fingerprints


def cmd_init(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    remote = get_remote(ctx, cmdargs.remote)
    added = init_remote(ctx, remote)
    for refspec in added:
        logger.info('Added %s', refspec)
    logger.critical('Signatures will be fetched from and pushed to %s', remote)


def cmd_import(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    fingerprints = import_signer_keys(ctx, cmdargs.keyfile)
    logger.critical('Imported %s keys', len(fingerprints))


def cmd_show(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    trustdb = cmdargs.trustdb or ctx.get_value('trustdb')
    records = get_signature_records(ctx, cmdargs.ref, cmdargs.base, trustdb=trustdb)
    if cmdargs.raw:
        for record in records:
            sys.stdout.write(record.as_raw() + '\n')
        return
    if not records:
        logger.critical('N: No signatures found for %s', cmdargs.ref)
        return
    sys.stdout.write(format_records(records))


def cmd_add(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    add_signature(ctx, cmdargs.ref, cmdargs.base, key=cmdargs.key)
    logger.critical('SIGN | %s', cmdargs.ref)
    if cmdargs.push or ctx.get_value('autopush', 'no') in ('yes', 'true'):
        push_signatures(ctx)
        logger.critical('PUSH | %s', get_remote(ctx))


def cmd_verify(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    mincount = cmdargs.mincount
    if mincount is None:
        try:
            mincount = int(ctx.get_value('mincount', str(DEFAULT_MINCOUNT)) or DEFAULT_MINCOUNT)
        except ValueError:
            raise ConfigurationError('signatures.mincount must be a number')
    trustdb = cmdargs.trustdb or ctx.get_value('trustdb')
    trustlevel = cmdargs.trustlevel or ctx.get_value('trustlevel', DEFAULT_TRUSTLEVEL) or DEFAULT_TRUSTLEVEL
    found = verify_ref(ctx, cmdargs.ref, cmdargs.base, mincount=mincount, trustdb=trustdb,
                       trustlevel=trustlevel)
    logger.critical('PASS | %s, %s of %s required signatures', cmdargs.ref, found, mincount)


def cmd_pull(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    pull_signatures(ctx, cmdargs.remote)
    logger.critical('PULL | %s', get_remote(ctx, cmdargs.remote))


def cmd_push(cmdargs: argparse.Namespace, ctx: RepoContext) -> None:
    push_signatures(ctx, cmdargs.remote)
    logger.critical('PUSH | %s', get_remote(ctx, cmdargs.remote))


def cmd_version(cmdargs: argparse.Namespace, ctx: Optional[RepoContext]) -> None:
    sys.stdout.write('git-signatures %s\n' % __VERSION__)


def cmd_help(cmdargs: argparse.Namespace, ctx: Optional[RepoContext]) -> None:
    parser = cmdargs.parser
    subparsers = cmdargs.subparsers
    if cmdargs.topic in subparsers:
        parser = subparsers[cmdargs.topic]
    elif cmdargs.topic:
        logger.critical('N: No such command: %s', cmdargs.topic)
    parser.print_help(sys.stdout)


class Command(enum.Enum):
    INIT = 'init'
    IMPORT = 'import'
    SHOW = 'show'
    ADD = 'add'
    VERIFY = 'verify'
    PULL = 'pull'
    PUSH = 'push'
    VERSION = 'version'
    HELP = 'help'


HandlerType = Callable[[argparse.Namespace, Optional[RepoContext]], None]

COMMANDS: Dict[Command, HandlerType] = {
    Command.INIT: cmd_init,
    Command.IMPORT: cmd_import,
    Command.SHOW: cmd_show,
    Command.ADD: cmd_add,
    Command.VERIFY: cmd_verify,
    Command.PULL: cmd_pull,
    Command.PUSH: cmd_push,
    Command.VERSION: cmd_version,
    Command.HELP: cmd_help,
}

# These run without a repository or external tools
STANDALONE: Tuple[Command, ...] = (Command.VERSION, Command.HELP)


def check_registry() -> None:
    missing = [cmd.value for cmd in Command if cmd not in COMMANDS]
    if missing:
        raise RuntimeError('No handler for commands: %s' % ', '.join(missing))


def _add_range_args(sp: argparse.ArgumentParser) -> None:
    sp.add_argument('ref', nargs='?', default='HEAD', help='Ref to act on')
    sp.add_argument('base', nargs='?', default=None,
                    help='Base to diff against (default: parent of ref)')


def _add_trustdb_arg(sp: argparse.ArgumentParser) -> None:
    sp.add_argument('-t', '--trust-db', dest='trustdb', default=None,
                    help='GnuPG trust database to use instead of the default one')


def get_parser() -> Tuple[argparse.ArgumentParser, Dict[str, argparse.ArgumentParser]]:
    parser = argparse.ArgumentParser(
        prog='git-signatures',
        description='Attach and verify detached PGP signatures on git refs',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Be a bit more verbose')
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Show debugging output')
    parser.add_argument('-s', '--section', dest='section', default=None,
                        help='Use config section [signatures "sectionname"]')
    parser.add_argument('--version', action='version', version=__VERSION__)

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')
    sps: Dict[str, argparse.ArgumentParser] = dict()

    sp = subparsers.add_parser(Command.INIT.value, help='Configure a remote to carry signatures')
    sp.add_argument('remote', nargs='?', default=None, help='Remote to configure (default: origin)')
    sps[Command.INIT.value] = sp

    sp = subparsers.add_parser(Command.IMPORT.value, help='Import and trust the keys in the signer list')
    sp.add_argument('-f', '--file', dest='keyfile', default=None,
                    help='Signer list to read (default: %s)' % DEFAULT_KEYFILE)
    sps[Command.IMPORT.value] = sp

    sp = subparsers.add_parser(Command.SHOW.value, help='Show signatures on a ref')
    sp.add_argument('-r', '--raw', action='store_true', default=False,
                    help='Print key|status|trust|date|author records')
    _add_trustdb_arg(sp)
    _add_range_args(sp)
    sps[Command.SHOW.value] = sp

    sp = subparsers.add_parser(Command.ADD.value, help='Sign a ref and store the signature')
    sp.add_argument('-k', '--key', dest='key', default=None,
                    help='Key to sign with (default: signatures.signingkey or user.signingkey)')
    sp.add_argument('-p', '--push', action='store_true', default=False,
                    help='Push signatures after adding')
    _add_range_args(sp)
    sps[Command.ADD.value] = sp

    sp = subparsers.add_parser(Command.VERIFY.value, help='Check that a ref has enough trusted signatures')
    sp.add_argument('-m', '--min-count', dest='mincount', type=int, default=None,
                    help='Minimum number of distinct trusted signatures (default: 1)')
    sp.add_argument('-T', '--trust-level', dest='trustlevel', default=None,
                    help='Trust level a signature needs to count (default: %s)' % DEFAULT_TRUSTLEVEL)
    _add_trustdb_arg(sp)
    _add_range_args(sp)
    sps[Command.VERIFY.value] = sp

    sp = subparsers.add_parser(Command.PULL.value, help='Fetch and merge signatures from a remote')
    sp.add_argument('remote', nargs='?', default=None, help='Remote to pull from (default: origin)')
    sps[Command.PULL.value] = sp

    sp = subparsers.add_parser(Command.PUSH.value, help='Push signatures to a remote')
    sp.add_argument('remote', nargs='?', default=None, help='Remote to push to (default: origin)')
    sps[Command.PUSH.value] = sp

    sp = subparsers.add_parser(Command.VERSION.value, help='Show version')
    sps[Command.VERSION.value] = sp

    sp = subparsers.add_parser(Command.HELP.value, help='Show help')
    sp.add_argument('topic', nargs='?', default=None, help='Command to show help for')
    sps[Command.HELP.value] = sp

    for name, sp in sps.items():
        sp.set_defaults(cmd=Command(name))

    return parser, sps


def setup_logging(cmdargs: argparse.Namespace) -> None:
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if cmdargs.debug:
        ch.setLevel(logging.DEBUG)
    elif cmdargs.verbose:
        ch.setLevel(logging.INFO)
    else:
        ch.setLevel(logging.CRITICAL)

    logger.addHandler(ch)


def main(argv: Optional[List[str]] = None) -> int:
    check_registry()
    parser, sps = get_parser()
    try:
        _args = parser.parse_args(argv)
    except SystemExit as ex:
        return 0 if not ex.code else 1

    setup_logging(_args)

    if 'cmd' not in _args:
        parser.print_help()
        return 1

    _args.parser = parser
    _args.subparsers = sps

    ctx = None
    try:
        if _args.cmd not in STANDALONE:
            check_required_tools(section=_args.section)
            ctx = RepoContext.discover(section=_args.section)
        COMMANDS[_args.cmd](_args, ctx)
    except Error as ex:
        logger.critical('E: %s', ex)
        return 1

    return 0


def command() -> None:
    sys.exit(main())


if __name__ == '__main__':
    command()
