"""
凭证加密工具
使用 Fernet 对账号凭证 JSON 进行对称加密，避免明文落库
"""
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken


class CredentialCipher:
    """对凭证 dict 进行加/解密的薄封装"""

    def __init__(self, key: str):
        self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            # 不把密文带进异常信息
            raise ValueError("凭证解密失败（加密密钥可能已更换）") from e

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data, ensure_ascii=False, separators=(",", ":")))

    def decrypt_json(self, ciphertext: str) -> Dict[str, Any]:
        obj = json.loads(self.decrypt(ciphertext))
        if not isinstance(obj, dict):
            raise ValueError("凭证格式错误")
        return obj


_cipher: Optional[CredentialCipher] = None


def get_credential_cipher() -> CredentialCipher:
    """使用 settings.credential_encryption_key 构造的全局实例"""
    global _cipher
    if _cipher is None:
        from app.core.config import get_settings

        _cipher = CredentialCipher(get_settings().credential_encryption_key)
    return _cipher
