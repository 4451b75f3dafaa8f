import logging
import os
import sys

import httpx

from .config import get_settings
from .core.embedding import CAFFEMODEL_FILE, PROTOTXT_FILE

logger = logging.getLogger(__name__)

# Model files URLs
MODEL_FILES = {
    PROTOTXT_FILE: 'https://raw.githubusercontent.com/opencv/opencv/master/samples/dnn/face_detector/deploy.prototxt',
    CAFFEMODEL_FILE: 'https://raw.githubusercontent.com/opencv/opencv_3rdparty/dnn_samples_face_detector_20170830/res10_300x300_ssd_iter_140000.caffemodel'
}


def download_file(url: str, filepath: str, timeout: float = 60.0) -> None:
    logger.info(f"Downloading {os.path.basename(filepath)}...")
    partial = filepath + ".part"
    with httpx.stream("GET", url, follow_redirects=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(partial, "wb") as f:
            for chunk in response.iter_bytes():
                f.write(chunk)
    os.replace(partial, filepath)
    logger.info(f"Downloaded {os.path.basename(filepath)}")


def download_models(model_dir: str) -> bool:
    """Fetch any missing detector files into ``model_dir``."""
    os.makedirs(model_dir, exist_ok=True)

    for filename, url in MODEL_FILES.items():
        filepath = os.path.join(model_dir, filename)
        if os.path.exists(filepath):
            continue
        try:
            download_file(url, filepath)
        except (httpx.HTTPError, OSError) as e:
            logger.error(f"Error downloading {filename}: {str(e)}")
            logger.error(
                f"Please download the model files manually into '{model_dir}': "
                + ", ".join(MODEL_FILES)
            )
            return False
    return True


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    if not download_models(get_settings().model_dir):
        sys.exit(1)


if __name__ == "__main__":
    main()
