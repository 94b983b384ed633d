from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import DetectMethod, DownscaleMethod, PixelateConfig, VectorizeConfig
from .errors import PixelPipelineError
from .models import ProcessingManifest
from .pipeline import process_image, vectorize_image
from .worker import PixelWorker, WorkerRequest

app = typer.Typer(help="AI生成画像などからドット絵（PNG / SVG）を再構成するツール")
console = Console()

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif"}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def load_config_from_path(path: Optional[Path], section: str) -> dict:
    """YAML設定を読み込み、指定セクション（pixelate / vectorize）を返す"""
    if path is None:
        return {}
    if not path.exists():
        raise typer.BadParameter(f"設定ファイルが見つかりません: {path}")
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise typer.BadParameter("設定ファイルの形式が不正です。")
    if section in data:
        data = data[section] or {}
        if not isinstance(data, dict):
            raise typer.BadParameter(f"設定ファイルの {section} セクションが不正です。")
    elif "pixelate" in data or "vectorize" in data:
        return {}
    return data


def _build_pixelate_config(config_dict: dict, overrides: dict) -> PixelateConfig:
    try:
        config = PixelateConfig(**config_dict)
        if overrides:
            config = PixelateConfig(**{**config.model_dump(), **overrides})
    except ValidationError as exc:
        raise typer.BadParameter(f"設定の読み込みに失敗しました: {exc}") from exc
    return config


def _print_summary(manifest: ProcessingManifest, palette_size: int) -> None:
    steps = manifest.processing_steps
    table = Table(title="ドット絵化サマリ")
    table.add_column("項目")
    table.add_column("値", justify="right")
    for label, value in [
        ("元サイズ", "x".join(map(str, manifest.original_size))),
        ("出力サイズ", "x".join(map(str, manifest.final_size))),
        ("スケール", steps.scale_detection.detected_scale),
        ("検出方法", steps.scale_detection.method_used),
        ("縮小方法", steps.downscaling.method),
        ("色数", palette_size),
        ("量子化フォールバック", "あり" if steps.color_quantization.fallback else "なし"),
        ("処理時間（ms）", manifest.processing_time_ms),
    ]:
        table.add_row(label, str(value))
    console.print(table)


@app.command()
def pixelate(
    input_path: Path = typer.Argument(..., help="入力画像パス"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="出力PNGパス（未指定時は <入力名>_pixel.png）"
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML形式の設定ファイル"),
    max_colors: Optional[int] = typer.Option(None, "--max-colors", help="最大色数（2〜256）"),
    auto_colors: Optional[bool] = typer.Option(
        None, "--auto-colors/--no-auto-colors", help="色数の自動検出"
    ),
    method: Optional[DownscaleMethod] = typer.Option(None, "--method", help="縮小方法"),
    detect: Optional[DetectMethod] = typer.Option(None, "--detect", help="スケール検出方法"),
    scale: Optional[int] = typer.Option(None, "--scale", help="スケールを手動指定"),
    max_grid_size: Optional[int] = typer.Option(None, "--max-grid-size", help="出力の最大辺（0で無効）"),
    manifest_path: Optional[Path] = typer.Option(None, "--manifest", help="マニフェストJSONの出力先"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログを出力"),
) -> None:
    """画像をドット絵PNGに変換"""
    _configure_logging(verbose)
    if not input_path.exists():
        raise typer.BadParameter(f"入力ファイルが見つかりません: {input_path}")

    overrides = {
        key: value
        for key, value in {
            "max_colors": max_colors,
            "auto_color_count": auto_colors,
            "downscale_method": method,
            "detect_method": detect,
            "manual_scale": scale,
            "max_grid_size": max_grid_size,
        }.items()
        if value is not None
    }
    config = _build_pixelate_config(load_config_from_path(config_path, "pixelate"), overrides)

    try:
        result = process_image(input_path, config)
    except PixelPipelineError as exc:
        console.print(f"[red]変換に失敗しました:[/] {exc}")
        raise typer.Exit(code=1) from exc

    output = output or input_path.with_name(f"{input_path.stem}_pixel.png")
    output.write_bytes(result.png)
    if manifest_path is not None:
        manifest_path.write_text(
            json.dumps(result.manifest.model_dump(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    _print_summary(result.manifest, len(result.palette))
    console.print(f"[green]完了しました。出力先: {output}[/]")


@app.command()
def vectorize(
    input_path: Path = typer.Argument(..., help="入力画像パス"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="出力SVGパス（未指定時は入力と同名で拡張子.svg）"
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML形式の設定ファイル"),
    colors: Optional[str] = typer.Option(
        None, "--colors", help="トレース前に量子化する色数（数値または auto）"
    ),
    engine: Optional[str] = typer.Option(None, "--engine", help="トレースエンジン（contour / vtracer）"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログを出力"),
) -> None:
    """画像をSVGに変換"""
    _configure_logging(verbose)
    if not input_path.exists():
        raise typer.BadParameter(f"入力ファイルが見つかりません: {input_path}")

    config_dict = load_config_from_path(config_path, "vectorize")
    try:
        config = VectorizeConfig(**config_dict)
        update = config.model_dump()
        if colors is not None:
            update["quantize"] = {
                "enabled": True,
                "max_colors": colors if colors == "auto" else int(colors),
            }
        if engine is not None:
            update["trace_options"] = {**update["trace_options"], "engine": engine}
        config = VectorizeConfig(**update)
    except (ValidationError, ValueError) as exc:
        raise typer.BadParameter(f"設定の読み込みに失敗しました: {exc}") from exc

    try:
        result = vectorize_image(input_path, config)
    except PixelPipelineError as exc:
        console.print(f"[red]変換に失敗しました:[/] {exc}")
        raise typer.Exit(code=1) from exc

    output = output or input_path.with_suffix(".svg")
    output.write_text(result.svg, encoding="utf-8")
    console.print(f"パス色数: {len(result.palette)}")
    if result.manifest.skipped_steps:
        console.print(f"[yellow]スキップされた処理:[/] {', '.join(result.manifest.skipped_steps)}")
    console.print(f"[green]完了しました。出力先: {output}[/]")


@app.command()
def batch(
    input_dir: Path = typer.Argument(..., help="入力画像のディレクトリ"),
    output_dir: Path = typer.Option(Path("./pixel_output"), "--output-dir", "-o", help="出力ディレクトリ"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML形式の設定ファイル"),
    workers: int = typer.Option(1, "--workers", "-w", min=1, help="同時に処理する画像数"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログを出力"),
) -> None:
    """ディレクトリ内の画像をまとめてドット絵化"""
    _configure_logging(verbose)
    if not input_dir.is_dir():
        raise typer.BadParameter(f"ディレクトリが見つかりません: {input_dir}")

    config = _build_pixelate_config(load_config_from_path(config_path, "pixelate"), {})
    files = sorted(p for p in input_dir.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    if not files:
        console.print("[yellow]対象の画像がありません。[/]")
        return

    output_dir.mkdir(parents=True, exist_ok=True)
    options = config.model_dump(mode="json")
    requests = [WorkerRequest(id=p.name, data=p.read_bytes(), options=options) for p in files]

    responses = asyncio.run(_run_batch(requests, workers))

    table = Table(title="バッチ処理結果")
    table.add_column("ファイル")
    table.add_column("結果")
    table.add_column("出力サイズ", justify="right")
    failures = 0
    for path, response in zip(files, responses):
        if response.type == "error" or response.result is None:
            failures += 1
            table.add_row(path.name, f"[red]{response.error}[/]", "-")
            continue
        out_path = output_dir / f"{path.stem}_pixel.png"
        out_path.write_bytes(response.result["png"])
        table.add_row(path.name, "[green]OK[/]", f"{response.result['width']}x{response.result['height']}")
    console.print(table)

    if failures:
        console.print(f"[red]{failures} 件の変換に失敗しました。[/]")
        raise typer.Exit(code=1)
    console.print(f"[green]完了しました。出力先: {output_dir}[/]")


async def _run_batch(requests: List[WorkerRequest], workers: int):
    async with PixelWorker(max_workers=workers) as worker:
        return await worker.run_batch(requests)


if __name__ == "__main__":
    app()
