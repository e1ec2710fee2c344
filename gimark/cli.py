import argparse
import logging
import os
import sys
import textwrap

from . import base
from . import data
from . import sync
from .errors import GimarkError
from .types import Resolution


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    try:
        return args.func(args) or 0
    except GimarkError as e:
        print(f'error: {e}', file=sys.stderr)
        return 1


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='gimark')
    parser.add_argument('-v', '--verbose', action='store_true')
    parser.add_argument('-C', dest='repo', default='.', help='repository directory')
    commands = parser.add_subparsers(dest='command')
    commands.required = True

    def remote_options(command_parser):
        command_parser.add_argument('--remote', help='remote URL or path (default: configured remote)')
        command_parser.add_argument('--token', default=os.environ.get('GIMARK_TOKEN'),
                                    help='access token (default: $GIMARK_TOKEN)')

    init_parser = commands.add_parser('init')
    init_parser.set_defaults(func=init)

    clone_parser = commands.add_parser('clone')
    clone_parser.set_defaults(func=clone)
    clone_parser.add_argument('url')
    clone_parser.add_argument('path')
    clone_parser.add_argument('--token', default=os.environ.get('GIMARK_TOKEN'))

    add_parser = commands.add_parser('add')
    add_parser.set_defaults(func=add)
    add_parser.add_argument('files', nargs='+')

    rm_parser = commands.add_parser('rm')
    rm_parser.set_defaults(func=rm)
    rm_parser.add_argument('files', nargs='+')

    commit_parser = commands.add_parser('commit')
    commit_parser.set_defaults(func=commit)
    commit_parser.add_argument('-m', '--message', required=True)

    push_parser = commands.add_parser('push')
    push_parser.set_defaults(func=push)
    remote_options(push_parser)

    pull_parser = commands.add_parser('pull')
    pull_parser.set_defaults(func=pull)
    remote_options(pull_parser)

    has_conflicts_parser = commands.add_parser('has-conflicts')
    has_conflicts_parser.set_defaults(func=has_conflicts)

    list_conflicts_parser = commands.add_parser('list-conflicts')
    list_conflicts_parser.set_defaults(func=list_conflicts)

    resolve_parser = commands.add_parser('resolve')
    resolve_parser.set_defaults(func=resolve)
    resolve_parser.add_argument('path')
    resolve_parser.add_argument('resolution', choices=[r.value for r in Resolution])
    resolve_parser.add_argument('--content-from', help='file holding the merged content (for "merge")')

    log_parser = commands.add_parser('log')
    log_parser.set_defaults(func=log)

    return parser.parse_args(argv)


def _open(args):
    return data.open_repository(args.repo)


def init(args):
    handle = sync.init(args.repo)
    print(f'Initialized empty gimark repository in {handle.git_dir}')


def clone(args):
    handle = sync.clone(args.url, args.path, args.token)
    print(f'Cloned into {handle.work_dir}')


def add(args):
    sync.stage(_open(args), args.files)


def rm(args):
    sync.unstage(_open(args), args.files)


def commit(args):
    print(sync.commit(_open(args), args.message))


def push(args):
    print(sync.push(_open(args), args.remote, args.token))


def pull(args):
    result = sync.pull(_open(args), args.remote, args.token)
    if result.conflicts:
        print('Merge conflicts in:')
        for entry in result.conflicts:
            print(f'    {entry.path}')
        print('Resolve them, then commit')
        return 1
    print(f'{result.merge_class.value} {result.head or ""}'.rstrip())


def has_conflicts(args):
    conflicted = sync.has_conflicts(_open(args))
    print('yes' if conflicted else 'no')
    return 1 if conflicted else 0


def list_conflicts(args):
    for entry in sync.list_conflicts(_open(args)):
        sides = ''.join(flag if present else '-' for flag, present in
                        (('B', entry.has_base), ('L', entry.has_local), ('R', entry.has_remote)))
        print(f'{sides} {entry.path}')


def resolve(args):
    content = None
    if args.content_from:
        with open(args.content_from, 'rb') as f:
            content = f.read()
    elif args.resolution == Resolution.USE_CONTENT.value:
        print('error: --content-from is required with "merge"', file=sys.stderr)
        return 2
    remaining = sync.resolve_conflict(_open(args), args.path, args.resolution, content)
    if not remaining:
        print('All conflicts resolved, commit to finish the merge')


def log(args):
    handle = _open(args)
    for oid in base.iter_commits_and_parents(handle, {sync.current_head(handle)}):
        commit_ = base.get_commit(handle, oid)
        name, email = commit_.author.identity
        print(f'commit {oid}')
        if len(commit_.parents) > 1:
            print(f'Merge: {" ".join(p[:10] for p in commit_.parents)}')
        print(f'Author: {name} <{email}>\n')
        print(textwrap.indent(commit_.message, '    '))
        print('')


if __name__ == '__main__':
    sys.exit(main())
