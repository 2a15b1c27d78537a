"""
Media Transcoder
Shrinks buffered media before upload.

- Images: Pillow, downscaled to a max dimension and re-encoded as WebP
- Audio: ffmpeg to MP3
- Video: ffmpeg to H.264/AAC MP4, capped height
- Documents: untouched

Any failure raises TranscodeError; callers upload the original instead.
"""
import asyncio
import io
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import List

from PIL import Image, UnidentifiedImageError

from backup_sync.core.errors import TranscodeError
from backup_sync.services.sync.storage import FileTypeInfo

logger = logging.getLogger(__name__)

FFMPEG_TIMEOUT_SECONDS = 300


@dataclass
class CompressionResult:
    data: bytes
    mime_type: str
    extension: str
    original_size: int
    compressed: bool

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return (1 - self.size / self.original_size) * 100


class MediaTranscoder:
    def __init__(
        self,
        enabled: bool = True,
        image_max_dimension: int = 1920,
        image_quality: int = 80,
        audio_bitrate: str = "128k",
        video_bitrate: str = "1500k",
        video_max_height: int = 720,
        ffmpeg_binary: str = "ffmpeg",
    ):
        self.enabled = enabled
        self.image_max_dimension = image_max_dimension
        self.image_quality = image_quality
        self.audio_bitrate = audio_bitrate
        self.video_bitrate = video_bitrate
        self.video_max_height = video_max_height
        self.ffmpeg_binary = ffmpeg_binary

    @staticmethod
    def passthrough(data: bytes, info: FileTypeInfo) -> CompressionResult:
        return CompressionResult(data, info.mime_type, info.extension, len(data), False)

    async def compress(self, data: bytes, info: FileTypeInfo) -> CompressionResult:
        if not self.enabled or not data:
            return self.passthrough(data, info)

        if info.file_type == "image":
            result = await asyncio.to_thread(self._compress_image, data)
        elif info.file_type == "audio":
            result = await self._compress_audio(data, info.extension)
        elif info.file_type == "video":
            result = await self._compress_video(data, info.extension)
        else:
            return self.passthrough(data, info)

        # Never store a "compressed" file that grew
        if result.size >= len(data):
            return self.passthrough(data, info)

        logger.debug(f"Compressed {info.file_type}: {len(data)} -> {result.size} bytes ({result.ratio:.1f}%)")
        return result

    # ------------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------------

    def _compress_image(self, data: bytes) -> CompressionResult:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                if image.mode not in ("RGB", "RGBA"):
                    image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
                image.thumbnail((self.image_max_dimension, self.image_max_dimension))
                output = io.BytesIO()
                image.save(output, format="WEBP", quality=self.image_quality)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise TranscodeError(f"Image compression failed: {e}")
        return CompressionResult(output.getvalue(), "image/webp", "webp", len(data), True)

    # ------------------------------------------------------------------------
    # Audio / video (ffmpeg)
    # ------------------------------------------------------------------------

    async def _compress_audio(self, data: bytes, extension: str) -> CompressionResult:
        args = ["-codec:a", "libmp3lame", "-b:a", self.audio_bitrate]
        output = await self._run_ffmpeg(data, extension, "mp3", args)
        return CompressionResult(output, "audio/mpeg", "mp3", len(data), True)

    async def _compress_video(self, data: bytes, extension: str) -> CompressionResult:
        args = [
            "-vf", f"scale=-2:'min({self.video_max_height},ih)'",
            "-c:v", "libx264",
            "-b:v", self.video_bitrate,
            "-preset", "fast",
            "-c:a", "aac",
            "-movflags", "+faststart",
        ]
        output = await self._run_ffmpeg(data, extension, "mp4", args)
        return CompressionResult(output, "video/mp4", "mp4", len(data), True)

    async def _run_ffmpeg(self, data: bytes, in_ext: str, out_ext: str, args: List[str]) -> bytes:
        with tempfile.TemporaryDirectory(prefix="transcode-") as workdir:
            source = os.path.join(workdir, f"input.{in_ext or 'bin'}")
            target = os.path.join(workdir, f"output.{out_ext}")
            with open(source, "wb") as handle:
                handle.write(data)

            cmd = [self.ffmpeg_binary, "-y", "-loglevel", "error", "-i", source, *args, target]
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (FileNotFoundError, PermissionError) as e:
                raise TranscodeError(f"ffmpeg unavailable: {e}")

            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=FFMPEG_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                raise TranscodeError(f"ffmpeg timed out after {FFMPEG_TIMEOUT_SECONDS}s")
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise

            if process.returncode != 0 or not os.path.exists(target):
                message = stderr.decode(errors="replace").strip()[:500]
                raise TranscodeError(f"ffmpeg exited with {process.returncode}: {message}")

            with open(target, "rb") as handle:
                return handle.read()
