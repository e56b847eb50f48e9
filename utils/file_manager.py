import os
import logging
import stat
import uuid

logger = logging.getLogger(__name__)

DIR_MODE = stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH
FILE_MODE = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IROTH


class FileManager:
    def __init__(self, base_dir=None):
        self.base_dir = os.path.abspath(base_dir or os.path.join(os.getcwd(), 'data'))
        self._ensure_directory(self.base_dir)

    def _ensure_directory(self, path):
        """Create a directory if it doesn't exist with proper permissions"""
        try:
            if not os.path.exists(path):
                os.makedirs(path, mode=0o755, exist_ok=True)
                logger.info(f"Created directory: {path}")
            os.chmod(path, DIR_MODE)
        except OSError as e:
            logger.error(f"Failed to create/update directory {path}: {str(e)}", exc_info=True)
            raise

    def unique_filename(self, extension):
        return f"{uuid.uuid4().hex}.{extension.lstrip('.')}"

    def save_content(self, filename, content, content_type='images'):
        """Save content under ``<base_dir>/<content_type>/`` and return the path relative to base_dir"""
        safe_filename = os.path.basename(filename)
        if safe_filename != filename or not safe_filename:
            raise ValueError(f"Unsafe filename: {filename}")

        subdir = os.path.join(self.base_dir, content_type)
        self._ensure_directory(subdir)
        filepath = os.path.join(subdir, safe_filename)

        try:
            if isinstance(content, bytes):
                with open(filepath, 'wb') as f:
                    f.write(content)
            else:
                with open(filepath, 'w', encoding='utf-8') as f:
                    f.write(content)
            os.chmod(filepath, FILE_MODE)
        except OSError as e:
            logger.error(f"Failed to save content: {str(e)}", exc_info=True)
            raise

        logger.info(f"Saved {content_type} content to: {filepath}")
        return os.path.join(content_type, safe_filename)

    def resolve(self, relative_path):
        """Absolute path of a stored file, or None when it would escape base_dir"""
        abs_path = os.path.abspath(os.path.join(self.base_dir, relative_path))
        if not abs_path.startswith(self.base_dir + os.sep):
            return None
        return abs_path

    def delete(self, relative_path):
        abs_path = self.resolve(relative_path) if relative_path else None
        if abs_path and os.path.isfile(abs_path):
            os.remove(abs_path)
            logger.info(f"Deleted file: {abs_path}")
