"""
Prompt templates for the cooking retrieval system.

Templates are formatted with ``str.format``; literal JSON braces are doubled.
"""

GRAPH_QUERY_SYSTEM = "你是一个图数据库专家。"

GRAPH_QUERY_PROMPT = """分析以下查询的图结构意图：

查询：{query}

请识别：
1. 查询类型：
   - entity_relation: 询问实体间的直接关系（如：鸡肉和胡萝卜能一起做菜吗？）
   - multi_hop: 需要多跳推理（如：鸡肉配什么蔬菜？需要：鸡肉→菜品→食材→蔬菜）
   - subgraph: 需要完整子图（如：川菜有什么特色？需要川菜相关的完整知识网络）
   - path_finding: 路径查找（如：从食材到成品菜的制作路径）
   - clustering: 聚类相似性（如：和宫保鸡丁类似的菜有哪些？）

2. 核心实体：查询中的关键实体名称
3. 目标实体：期望找到的实体类型
4. 关系类型：涉及的关系类型
5. 遍历深度：需要的图遍历深度（1-3跳）

只返回JSON，不要包含其他文字。格式示例：
{{
  "query_type": "multi_hop",
  "source_entities": ["鸡肉"],
  "target_entities": ["蔬菜类食材"],
  "relation_types": ["REQUIRES", "BELONGS_TO_CATEGORY"],
  "max_depth": 3,
  "reasoning": "需要多跳推理：鸡肉→菜品→食材→蔬菜"
}}"""

KEYWORD_EXTRACTION_PROMPT = """分析以下查询并提取关键词，分为两个层次：

查询：{query}

提取规则：
1. 实体级关键词：具体的食材、菜品名称、工具等有形实体
   - 例如：鸡胸肉、西兰花、红烧肉、平底锅
   - 对于抽象查询，推测相关的具体食材或菜品
2. 主题级关键词：抽象概念、烹饪主题、饮食风格、营养特点等
   - 例如：减肥、低热量、川菜、素食、下饭菜、快手菜
   - 排除动作词：推荐、介绍、制作、怎么做等

示例：
查询："推荐几个减肥菜"
{{
  "entity_keywords": ["鸡胸肉", "西兰花", "水煮蛋", "胡萝卜", "黄瓜"],
  "topic_keywords": ["减肥", "低热量", "高蛋白", "低脂"]
}}

查询："川菜有什么特色"
{{
  "entity_keywords": ["麻婆豆腐", "宫保鸡丁", "水煮鱼", "辣椒", "花椒"],
  "topic_keywords": ["川菜", "麻辣", "香辣", "下饭菜"]
}}

只返回JSON，不要包含其他文字。"""

RELATION_KEYS_PROMPT = """为以下烹饪知识图谱中的关系生成检索关键词：

关系类型：{relation_type}
源实体：{source}
目标实体：{target}

请返回3-5个能帮助用户检索到这条关系的中文关键词，格式：
{{"keys": ["关键词1", "关键词2", "关键词3"]}}

只返回JSON，不要包含其他文字。"""
