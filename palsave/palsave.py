import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import *

from palsave import CompressionMode, PalSave, PalSaveError

logger = logging.getLogger(__name__)


def _build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog='palsave',
                            description='Compress and decompress PlZ save containers')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Log container details while processing')
    sub = parser.add_subparsers(dest='operation', required=True)

    compress = sub.add_parser('compress', help='Wrap a raw payload into a save container')
    compress.add_argument('input', type=Path, help='Path to the raw (decompressed) payload')
    compress.add_argument('output', type=Path, help='Path of the save container to write')
    compress.add_argument('--mode', '-m', default='2', choices=['1', '2'],
                          help='Number of zlib passes (default: 2)')

    decompress = sub.add_parser('decompress', help='Extract the raw payload from a save container')
    decompress.add_argument('input', type=Path, help='Path to the save container')
    decompress.add_argument('output', type=Path, help='Path of the raw payload to write')

    info = sub.add_parser('info', help='Print the header of a save container')
    info.add_argument('input', type=Path, help='Path to the save container')

    return parser


def _compress(args) -> None:
    save = PalSave.from_decompressed_file(args.input, CompressionMode.parse(args.mode))
    save.to_file(args.output)
    print(f"Compressed {args.input} to {args.output}")


def _decompress(args) -> None:
    save = PalSave.from_file(args.input)
    args.output.write_bytes(save.decompressed_body())
    print(f"Decompressed {args.input} to {args.output}")


def _info(args) -> None:
    # structural decode only, so a corrupt body still reports its header
    save = PalSave.from_file(args.input)
    header = save.header
    print("Header:")
    print("Magic:", header["magic"])
    print("Compression Mode:", header["compression_mode"])
    print("Uncompressed Size:", header["uncompressed_size"])
    print("Stage1 Size:", header["stage1_size"])
    print("Body Size:", header["body_size"])


_OPERATIONS = {
    'compress': _compress,
    'decompress': _decompress,
    'info': _info,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    try:
        _OPERATIONS[args.operation](args)
    except (PalSaveError, OSError) as e:
        logger.debug("%s failed", args.operation, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
