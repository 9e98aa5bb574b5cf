"""
Print the current Imaris dataset and Surpass scene.

Run from Imaris as an XTension (Imaris passes its application id), or from a
shell with the id as argument:

    python main.py 0
"""
import logging
import sys

from IceImarisConnector import IceImarisConnector

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def main(aImarisId):
    conn = IceImarisConnector(aImarisId)
    if not conn.is_alive():
        logger.error("Could not connect to Imaris %s", aImarisId)
        return 1

    logger.info("Connected to Imaris version %d", conn.get_imaris_version_as_integer())

    sizes = conn.get_sizes()
    if sizes is None:
        logger.info("No dataset loaded")
    else:
        logger.info("Dataset size: %dx%dx%d, %d channel(s), %d timepoint(s)", *sizes)
        logger.info("Voxel size: %.3f, %.3f, %.3f", *conn.get_voxel_sizes())
        logger.info("Data type: %s", conn.get_numpy_datatype())

        stack = conn.get_data_volume(0, 0)
        logger.info("Channel 0, timepoint 0: min %s, max %s", stack.min(), stack.max())

    for child in conn.get_all_surpass_children(recursive=True):
        logger.info("Surpass object: %s", child.GetName())

    conn.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main(int(sys.argv[1]) if len(sys.argv) > 1 else 0))
