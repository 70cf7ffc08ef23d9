from dataclasses import dataclass

from ..inference.image_generation import ImageGenerationClient
from ..inference.render_provider import RenderProviderClient
from ..inference.speech import SpeechSynthesizer
from ..inference.text_generation import TextGenerator
from ..services.storage import BlobStorage


@dataclass
class EngineServices:
    """External collaborators the driver and poller talk to."""

    text: TextGenerator
    speech: SpeechSynthesizer
    images: ImageGenerationClient
    storage: BlobStorage
    render: RenderProviderClient


def build_services() -> EngineServices:
    return EngineServices(
        text=TextGenerator(),
        speech=SpeechSynthesizer(),
        images=ImageGenerationClient(),
        storage=BlobStorage(),
        render=RenderProviderClient(),
    )
