from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List, Literal

JobStatus = Literal["starting", "processing", "succeeded", "failed", "canceled"]


class TrainingJob(BaseModel):
    # Remote fields we do not model are kept and handed back to clients.
    model_config = ConfigDict(extra="allow")

    id: str
    status: JobStatus
    output: Optional[Dict[str, Any]] = None
    error: Optional[Any] = None

    @property
    def weights_url(self) -> Optional[str]:
        if not self.output:
            return None
        return self.output.get("weights") or None


class BlobUploadResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    key: str
    size: int


class UploadedImage(BaseModel):
    filename: str
    path: Optional[str] = None


class UploadImagesResponse(BaseModel):
    files: List[UploadedImage]


class StartTrainingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_files: List[UploadedImage] = Field(default_factory=list, alias="imageFiles")
    steps: int = 1000
    lora_rank: int = Field(16, alias="loraRank")
    optimizer: str = "adamw8bit"
    batch_size: int = Field(1, alias="batchSize")
    resolution: str = "512,768,1024"
    autocaption: bool = True
    trigger_word: str = Field("TOK", alias="triggerWord")
    learning_rate: float = Field(0.0004, alias="learningRate")
    wandb_project: str = Field("flux_train_replicate", alias="wandbProject")
    wandb_save_interval: int = Field(100, alias="wandbSaveInterval")
    caption_dropout_rate: float = Field(0.05, alias="captionDropoutRate")
    cache_latents_to_disk: bool = Field(False, alias="cacheLatentsToDisk")
    wandb_sample_interval: int = Field(100, alias="wandbSampleInterval")

    def trainer_input(self, input_images: str) -> Dict[str, Any]:
        return {
            "steps": self.steps,
            "lora_rank": self.lora_rank,
            "optimizer": self.optimizer,
            "batch_size": self.batch_size,
            "resolution": self.resolution,
            "autocaption": self.autocaption,
            "input_images": input_images,
            "trigger_word": self.trigger_word,
            "learning_rate": self.learning_rate,
            "wandb_project": self.wandb_project,
            "wandb_save_interval": self.wandb_save_interval,
            "caption_dropout_rate": self.caption_dropout_rate,
            "cache_latents_to_disk": self.cache_latents_to_disk,
            "wandb_sample_interval": self.wandb_sample_interval,
        }


class GenerateImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    extra_lora: Optional[str] = None


class GenerateImageResponse(BaseModel):
    imageUrl: str
    base64Image: str


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None
