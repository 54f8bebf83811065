import argparse
import logging
import os
import sys
from pathlib import Path

if "src" not in sys.path:
    sys.path.insert(0, "src")

# libtorch 自带 OpenMP, 多个 OpenMP 运行时并存时容易冲突
os.environ.setdefault("OMP_NUM_THREADS", "1")
os.environ.setdefault("MKL_NUM_THREADS", "1")

from stemsplit.analysis import detect_bpm, extract_cover
from stemsplit.codec import decode
from stemsplit.config import (
    SeparationConfig,
    load_config,
    load_model_registry,
    pick_model,
)
from stemsplit.errors import ModelLoadError, SeparationError
from stemsplit.service import SeparationService
from stemsplit.stem_separator import init_model
from stemsplit.utils import setup_logging

logger = logging.getLogger("stemsplit")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Split music files into vocals/drums/bass/other stems."
    )
    parser.add_argument("inputs", nargs="+", type=Path, help="audio files to split")
    parser.add_argument("-o", "--output", type=Path, default=Path("separated"))
    parser.add_argument("-c", "--config", type=Path, help="JSON config file")
    parser.add_argument("-m", "--model", help="model name, e.g. htdemucs_6s")
    parser.add_argument("--repo", type=Path, help="local model repo directory")
    parser.add_argument(
        "--registry",
        type=Path,
        help="models.json; picks htdemucs_6s when its weights are in --repo",
    )
    parser.add_argument("--device", help="auto, cpu, cuda:0, mps")
    parser.add_argument("--two-stems", action="store_true", help="vocals + instrumental")
    parser.add_argument("--post-process", action="store_true")
    parser.add_argument("--bit-depth", type=int, choices=(16, 24, 32))
    parser.add_argument("-j", "--workers", type=int)
    parser.add_argument("--analyze", action="store_true", help="print bpm, extract cover")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def resolve_config(args: argparse.Namespace) -> SeparationConfig:
    config = load_config(args.config) if args.config else SeparationConfig()
    overrides = {
        "model": args.model,
        "repo": args.repo,
        "device": args.device,
        "bit_depth": args.bit_depth,
        "workers": args.workers,
        "two_stems": args.two_stems or None,
        "post_process": args.post_process or None,
    }
    return config.model_copy(
        update={k: v for k, v in overrides.items() if v is not None}
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        config = resolve_config(args)
    except (OSError, ValueError) as e:
        logger.critical(f"invalid config {args.config}: {e}")
        return 2

    try:
        if args.registry and not args.model:
            info = pick_model(load_model_registry(args.registry), config.repo)
            config = config.model_copy(update={"model": info.name})
        model = init_model(config)
    except (ModelLoadError, OSError, ValueError) as e:
        logger.critical(f"cannot load model: {e}")
        return 2

    failed = 0
    with SeparationService(model, config) as service:
        tickets = [
            (path, service.submit(path, args.output / path.stem)) for path in args.inputs
        ]
        for path, ticket in tickets:
            try:
                result = ticket.result()
            except SeparationError as e:
                failed += 1
                print(f"{path}: [{e.kind}] {e}", file=sys.stderr)
                continue
            for stem, stem_path in result.stems.items():
                print(f"{path}\t{stem}\t{stem_path}")
            if args.analyze:
                print(f"{path}\tbpm\t{detect_bpm(decode(path)):.1f}")
                if cover := extract_cover(path, args.output / path.stem):
                    print(f"{path}\tcover\t{cover}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
