"""
文件校验器

按声明哈希的长度选择算法（sha1 / sha256 / sha512），支持边下载边计算。
"""

import hashlib
import os
from typing import Optional

import aiofiles

from modkeeper.exceptions import IntegrityError

HASH_ALGORITHMS = {40: "sha1", 64: "sha256", 128: "sha512"}


def algorithm_for(expected_hash: str) -> Optional[str]:
    """根据十六进制摘要长度推断算法"""
    return HASH_ALGORITHMS.get(len(expected_hash))


class ArtifactVerifier:
    """增量校验器"""

    def __init__(self, expected_hash: str, project_id: str = ""):
        self.expected_hash = expected_hash.lower()
        self.project_id = project_id
        algorithm = algorithm_for(self.expected_hash)
        if algorithm is None:
            raise IntegrityError(
                f"无法识别的内容哈希: {project_id}",
                context={"project_id": project_id, "expected": expected_hash},
            )
        self._hash = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk: bytes):
        self._hash.update(chunk)
        self.size += len(chunk)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()

    def matches(self) -> bool:
        return self.hexdigest() == self.expected_hash

    def verify(self):
        """不匹配时抛出 IntegrityError"""
        if not self.matches():
            raise IntegrityError(
                f"内容哈希校验失败: {self.project_id}",
                context={
                    "project_id": self.project_id,
                    "expected": self.expected_hash,
                    "actual": self.hexdigest(),
                },
            )

    @staticmethod
    async def calc_hash(file_path: str, algorithm: str = "sha1") -> Optional[str]:
        """
        计算文件的哈希值

        Args:
            file_path: 文件路径
            algorithm: 哈希算法

        Returns:
            哈希值或 None（如果文件不存在）
        """
        if not os.path.exists(file_path):
            return None

        digest = hashlib.new(algorithm)
        try:
            async with aiofiles.open(file_path, "rb") as f:
                while True:
                    data = await f.read(65536)
                    if not data:
                        break
                    digest.update(data)
            return digest.hexdigest()
        except OSError:
            return None

    @staticmethod
    async def is_valid(file_path: str, expected_hash: str) -> bool:
        """检查文件是否存在且哈希匹配"""
        algorithm = algorithm_for(expected_hash)
        if algorithm is None:
            return False
        actual = await ArtifactVerifier.calc_hash(file_path, algorithm)
        return actual is not None and actual == expected_hash.lower()
