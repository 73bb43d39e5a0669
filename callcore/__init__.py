"""callcore - 1:1 통화 및 풀메시 컨퍼런스 시그널링 코어"""

__version__ = "0.1.0"
