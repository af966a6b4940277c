import logging
import os
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

ACTIVITY_DIR = "your_instagram_activity"


class MediaResolver:
    """Map a JSON item's relative URI onto a file inside the extracted archive."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def candidates(self, uri: str, json_path: Optional[Path] = None) -> List[Path]:
        relative = str(uri).lstrip("/")
        paths = [
            self.root / relative,
            self.root / ACTIVITY_DIR / relative,
        ]
        if json_path is not None:
            json_dir = Path(json_path).resolve().parent
            paths.append(json_dir / relative)
            # older exports keep content/<key>.json two levels below the media root
            paths.append(json_dir.parent.parent / relative)
        return paths

    def resolve(self, uri: str, json_path: Optional[Path] = None) -> Optional[Path]:
        """
        Find the first existing, readable candidate for a media URI.

        Args:
            uri: Relative URI from the archive JSON (e.g. media/posts/2023/a.jpg)
            json_path: The category JSON the URI came from

        Returns:
            Absolute path to the media file, or None if nothing matched
        """
        if not uri:
            return None
        for candidate in self.candidates(uri, json_path):
            path = Path(os.path.normpath(candidate))
            if not path.is_relative_to(self.root):
                logger.warning(f"Ignoring media path outside archive: {uri}")
                continue
            if path.is_file() and os.access(path, os.R_OK):
                return path
        logger.info(f"Media not found for uri={uri}")
        return None
