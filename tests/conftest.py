import pytest
from PIL import Image, ImageDraw


def write_gif(path, seed=0, frames=4, size=(64, 48), duration=100, loop=0):
    """Write a small animated GIF whose frames differ from each other and from other seeds."""
    width, height = size
    images = []
    for index in range(frames):
        img = Image.new('RGB', size, (255, 255, 255))
        draw = ImageDraw.Draw(img)
        offset = (seed * 7 + index * 5) % max(1, width // 2)
        draw.rectangle([offset, 0, offset + width // 3, height // 2], fill=(200, 30, 30))
        draw.ellipse([width // 2, height // 2 - (seed % 5), width - 1, height - 1], fill=(20, 20, 160))
        draw.line([0, height - 1 - index, width - 1, index], fill=(0, 120, 0), width=2)
        images.append(img)
    images[0].save(path, save_all=True, append_images=images[1:], duration=duration, loop=loop)
    return path


@pytest.fixture
def make_gif():
    return write_gif
