import io
import logging

import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_DIMENSION = 800
JPEG_QUALITY = 85


class ImageDownloader:
    """Fetches a product image, normalizes it to a bounded JPEG and stores it."""

    def __init__(self, file_manager, max_bytes=5 * 1024 * 1024, timeout=10):
        self.file_manager = file_manager
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.headers = {
            'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
            'Accept': 'image/*',
        }

    def download(self, url):
        """Return the stored image path relative to the data directory, or None on any failure"""
        if not url or not url.startswith(('http://', 'https://')):
            return None
        try:
            response = requests.get(url, headers=self.headers, timeout=self.timeout, stream=True)
            response.raise_for_status()
            content_type = response.headers.get('Content-Type', '')
            if content_type and not content_type.startswith('image/'):
                logger.info(f"Skipping non-image content ({content_type}) from {url}")
                return None
            data = response.raw.read(self.max_bytes + 1, decode_content=True)
            if len(data) > self.max_bytes:
                logger.info(f"Image from {url} exceeds {self.max_bytes} bytes, skipping")
                return None
            return self.file_manager.save_content(
                self.file_manager.unique_filename('jpg'),
                self.process(data),
                'images',
            )
        except requests.exceptions.RequestException as e:
            logger.info(f"Failed to download image {url}: {str(e)}")
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Failed to process image {url}: {str(e)}")
        return None

    def process(self, data):
        """Verify, shrink to fit MAX_DIMENSION and re-encode as JPEG"""
        Image.open(io.BytesIO(data)).verify()
        # verify() leaves the image unusable, so open it again
        image = Image.open(io.BytesIO(data))
        if image.mode not in ('RGB', 'L'):
            image = image.convert('RGB')
        image.thumbnail((MAX_DIMENSION, MAX_DIMENSION))
        output = io.BytesIO()
        image.save(output, format='JPEG', quality=JPEG_QUALITY, optimize=True)
        return output.getvalue()
