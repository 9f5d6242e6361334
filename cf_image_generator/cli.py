"""
命令行接口
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import ConfigManager
from .exceptions import AppError, ConfigurationError
from .service import ImageGenerationService


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None):
    """配置日志"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    # 简化日志格式
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )

    # 降低第三方库的日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def create_service(config_path: Optional[Path] = None) -> ImageGenerationService:
    """按配置创建图片生成服务"""
    config = ConfigManager(config_path=config_path).load()
    logging.info(f"📡 已加载 {len(config.accounts)} 个账号, {len(config.models)} 个模型")
    return ImageGenerationService(config)


def default_output_path(model_id: str) -> Path:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_model = "".join(c if c.isalnum() or c in "-_." else "_" for c in model_id)
    return Path("outputs") / f"{safe_model}_{timestamp}.png"


def cmd_generate(args) -> int:
    service = create_service(Path(args.config))
    result = service.generate_image_sync(
        prompt=args.prompt,
        model_id=args.model,
        size=args.size,
        steps=args.steps,
        enhance=args.enhance,
    )

    output_path = Path(args.output) if args.output else default_output_path(result.model_id)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result.image_bytes)
    logging.info(f"图片已保存: {output_path}")

    summary = result.to_dict()
    summary["output_path"] = str(output_path)
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


def cmd_check(args) -> int:
    service = create_service(Path(args.config))
    summary = service.config_summary()
    result = service.test_connection_sync()

    print(json.dumps({"config": summary, "connection": result.to_dict()}, ensure_ascii=False, indent=2))
    return 0 if result.connected else 1


def cmd_models(args) -> int:
    service = create_service(Path(args.config))
    print(json.dumps(service.list_models(), ensure_ascii=False, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cf-image-generator",
        description="Cloudflare Workers AI 多账号图片生成",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 生成图片
  python -m cf_image_generator generate "a cat in space" -m FLUX.1-Schnell-CF -s 1024x1024

  # 翻译/增强提示词后生成
  python -m cf_image_generator generate "太空中的猫" --enhance

  # 检查配置和连接状态
  python -m cf_image_generator check
        """,
    )

    parser.add_argument(
        "-c", "--config",
        default="config.json",
        help="配置文件路径 (默认: config.json)",
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="日志级别 (默认: INFO)",
    )

    parser.add_argument(
        "--log-file",
        help="日志文件路径",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen = subparsers.add_parser("generate", help="生成图片")
    gen.add_argument("prompt", help="提示词")
    gen.add_argument("-m", "--model", help="模型 ID（默认使用配置中的默认模型）")
    gen.add_argument("-s", "--size", default="1024x1024", help="尺寸 宽x高 (默认: 1024x1024)")
    gen.add_argument("--steps", type=int, help="生成步数（默认使用 FLUX_NUM_STEPS）")
    gen.add_argument("--enhance", action="store_true", help="翻译/增强提示词")
    gen.add_argument("-o", "--output", help="输出文件路径")
    gen.set_defaults(func=cmd_generate)

    check = subparsers.add_parser("check", help="检查配置和连接状态")
    check.set_defaults(func=cmd_check)

    models = subparsers.add_parser("models", help="列出可用模型")
    models.set_defaults(func=cmd_models)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主入口"""
    parser = build_parser()
    args = parser.parse_args(argv)

    # 配置日志
    setup_logging(level=args.log_level, log_file=Path(args.log_file) if args.log_file else None)
    logger = logging.getLogger(__name__)

    try:
        return args.func(args)

    except ConfigurationError as e:
        logger.error(f"配置错误: {e.message}")
        print(json.dumps(e.to_dict(), ensure_ascii=False))
        return 1

    except AppError as e:
        logger.error(f"生成错误: {e.message}")
        print(json.dumps(e.to_dict(), ensure_ascii=False))
        return 1

    except Exception as e:
        logger.exception(f"未知错误: {e}")
        print(json.dumps({"error": str(e)}, ensure_ascii=False))
        return 1


if __name__ == "__main__":
    sys.exit(main())
