from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from .client import ModelCallError, build_backend
from .config import Settings, TranslationJob
from .interrupts import CancelledByUser, CancelToken, install_signal_handlers
from .models import ConfigError, ModelManager
from .progress import ProgressState
from .translator import SubtitleTranslator

_SETTING_FLAGS = {
    "model": "model_name",
    "batch_size": "batch_size",
    "thinking_budget": "thinking_budget",
    "temperature": "temperature",
    "top_p": "top_p",
    "top_k": "top_k",
    "provider": "provider",
}


def _add_model_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("-k", "--api-key", help="主 API Key（默认读取 GEMINI_API_KEY / OPENAI_API_KEY）")
    p.add_argument("--api-key2", help="备用 API Key，配额耗尽时切换")
    p.add_argument("--provider", choices=["gemini", "openai"], help="模型服务商")
    p.add_argument("-m", "--model", help="模型名称")
    p.add_argument("-b", "--batch-size", type=int, help="每批字幕条数")
    p.add_argument("--no-streaming", action="store_true", help="关闭流式响应")
    p.add_argument("--no-thinking", action="store_true", help="关闭思考模式")
    p.add_argument("--thinking-budget", type=int, help="思考 token 预算 (0-24576)")
    p.add_argument("--temperature", type=float, help="采样温度 (0.0-2.0)")
    p.add_argument("--top-p", type=float, help="Top P (0.0-1.0)")
    p.add_argument("--top-k", type=int, help="Top K (>=0)")
    p.add_argument("--paid-quota", action="store_true", help="付费配额：批次之间不等待")
    p.add_argument("--progress-log", action="store_true", help="保存 progress.log")
    p.add_argument("--thoughts-log", action="store_true", help="保存 thoughts.log")
    p.add_argument("-y", "--yes", action="store_true", help="发现已保存进度时自动继续")
    p.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gemsub", description="使用大模型批量翻译 SRT 字幕")
    sub = parser.add_subparsers(dest="command", required=True)

    tr = sub.add_parser("translate", help="翻译单个字幕文件")
    tr.add_argument("input", type=Path, help="输入 SRT 文件")
    tr.add_argument("-l", "--target-language", help="目标语言")
    tr.add_argument("-o", "--output", type=Path, help="输出文件（默认: <输入名>_<语言>.srt）")
    tr.add_argument("-s", "--start-line", type=int, help="从第几行开始翻译")
    tr.add_argument("-d", "--description", help="补充说明（作品背景、术语等）")
    _add_model_options(tr)

    bt = sub.add_parser("batch", help="翻译多个字幕文件")
    bt.add_argument("inputs", type=Path, nargs="+", help="输入 SRT 文件")
    bt.add_argument("-l", "--target-language", help="目标语言")
    bt.add_argument("-o", "--output-dir", type=Path, help="输出目录（默认与输入相同）")
    bt.add_argument("-d", "--description", help="补充说明（作品背景、术语等）")
    _add_model_options(bt)

    ls = sub.add_parser("models", help="列出可用模型")
    ls.add_argument("-k", "--api-key", help="API Key")
    ls.add_argument("--provider", choices=["gemini", "openai"], help="模型服务商")
    ls.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    for flag, name in _SETTING_FLAGS.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "no_streaming", False):
        overrides["streaming"] = False
    if getattr(args, "no_thinking", False):
        overrides["thinking"] = False
    if getattr(args, "paid_quota", False):
        overrides["free_quota"] = False
    if getattr(args, "progress_log", False):
        overrides["progress_log"] = True
    if getattr(args, "thoughts_log", False):
        overrides["thoughts_log"] = True

    settings = Settings(**overrides)
    key_field = "openai_api_key" if settings.provider == "openai" else "gemini_api_key"
    updates: dict[str, Any] = {}
    if getattr(args, "api_key", None):
        updates[key_field] = args.api_key
    if getattr(args, "api_key2", None):
        updates[f"{key_field}2"] = args.api_key2
    return settings.model_copy(update=updates) if updates else settings


def _setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format="<green>{time:HH:mm:ss}</green> | <level>{level:<8}</level> | <level>{message}</level>",
    )


def _ask_resume(state: ProgressState) -> bool:
    try:
        answer = input(f"发现已保存的进度（第 {state.line} 行），是否继续？(y/n): ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _translate_one(
    settings: Settings,
    job: TranslationJob,
    token: CancelToken,
    assume_yes: bool,
) -> bool:
    logger.info(f"输入: {job.input_file}")
    logger.info(f"输出: {job.output_file}")
    translator = SubtitleTranslator(settings, job, cancel_token=token)
    return translator.translate(confirm_resume=None if assume_yes else _ask_resume)


def _cmd_translate(args: argparse.Namespace, settings: Settings, token: CancelToken) -> int:
    language = args.target_language or settings.target_language
    if not language:
        logger.error("请通过 -l 或 TARGET_LANGUAGE 指定目标语言")
        return 2
    job = TranslationJob(
        input_file=args.input,
        target_language=language,
        output_file=args.output,
        start_line=args.start_line,
        description=args.description,
    )
    return 0 if _translate_one(settings, job, token, args.yes) else 1


def _cmd_batch(args: argparse.Namespace, settings: Settings, token: CancelToken) -> int:
    language = args.target_language or settings.target_language
    if not language:
        logger.error("请通过 -l 或 TARGET_LANGUAGE 指定目标语言")
        return 2
    ok = 0
    for path in args.inputs:
        output = None
        if args.output_dir is not None:
            output = args.output_dir / f"{path.stem}_{language}.srt"
        job = TranslationJob(input_file=path, target_language=language, output_file=output, description=args.description)
        if _translate_one(settings, job, token, args.yes):
            ok += 1
        else:
            logger.error(f"翻译失败: {path}")
    logger.info(f"批量翻译完成: {ok}/{len(args.inputs)} 个文件成功")
    return 0 if ok == len(args.inputs) else 1


def _cmd_models(settings: Settings) -> int:
    try:
        ModelManager(settings).ensure_ready()
    except ConfigError as exc:
        logger.error(str(exc))
        return 2
    primary, _ = settings.api_keys()
    try:
        names = build_backend(settings).list_models(primary or "")
    except Exception as exc:  # SDK errors, reported to the user as-is
        logger.error(f"获取模型列表失败: {exc}")
        return 1
    if not names:
        logger.warning("没有可用的模型")
        return 1
    print("Available models:\n")
    for name in names:
        print(name)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    settings = _settings_from_args(args)

    if args.command == "models":
        return _cmd_models(settings)

    token = CancelToken()
    install_signal_handlers(token)
    try:
        if args.command == "batch":
            return _cmd_batch(args, settings, token)
        return _cmd_translate(args, settings, token)
    except (CancelledByUser, KeyboardInterrupt):
        logger.warning("已中断，进度已保存，可再次运行以继续")
        return 130
    except ModelCallError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
